"""
Layer specs -> torch modules.

Layers are described by plain dicts so a model topology can be saved as
JSON and rebuilt later::

    {"type": "dense", "units": 16, "activation": "relu", "input_shape": [3]}
    {"type": "conv2d", "filters": 8, "kernel_size": 5, "activation": "relu"}
    {"type": "max_pooling2d", "pool_size": 2}
    {"type": "flatten"}

Shapes exclude the batch dimension. Image tensors are channels-last
([height, width, channels]); convolution and pooling modules move the
channels first internally and back again, so flatten order and saved
shapes stay channels-last.
"""
import logging
import math
import re
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

import torch
import torch.nn as nn

logger = logging.getLogger(__name__)

Shape = List[int]

ACTIVATIONS: Dict[str, Callable[[], nn.Module]] = {
    "relu": nn.ReLU,
    "relu6": nn.ReLU6,
    "sigmoid": nn.Sigmoid,
    "tanh": nn.Tanh,
    "softmax": lambda: nn.Softmax(dim=-1),
    "elu": nn.ELU,
    "selu": nn.SELU,
    "softplus": nn.Softplus,
    "leakyrelu": nn.LeakyReLU,
    "linear": nn.Identity,
}

INITIALIZERS: Dict[str, Callable[[torch.Tensor], Any]] = {
    "glorotuniform": nn.init.xavier_uniform_,
    "glorotnormal": nn.init.xavier_normal_,
    "heuniform": nn.init.kaiming_uniform_,
    "henormal": nn.init.kaiming_normal_,
    "variancescaling": nn.init.kaiming_normal_,
    "zeros": nn.init.zeros_,
    "ones": nn.init.ones_,
}


class ChannelsFirst(nn.Module):
    """Run a channels-first module on a channels-last (N, H, W, C) tensor."""

    def __init__(self, module: nn.Module):
        super().__init__()
        self.module = module

    def forward(self, x: torch.Tensor) -> torch.Tensor:
        x = self.module(x.permute(0, 3, 1, 2))
        return x.permute(0, 2, 3, 1)


def normalize_name(name: str) -> str:
    """'maxPooling2d', 'max_pooling2d' and 'MaxPooling2D' all become 'maxpooling2d'."""
    return name.replace("_", "").replace("-", "").lower()


def _snake_case(key: str) -> str:
    return re.sub(r"(?<!^)(?=[A-Z])", "_", key).lower()


def normalize_spec(spec: Dict[str, Any]) -> Dict[str, Any]:
    """Snake-case the option keys of a layer spec (``inputShape`` -> ``input_shape``)."""
    if not isinstance(spec, dict):
        raise ValueError(f"Layer spec must be a dict, got {type(spec).__name__}")
    if "type" not in spec:
        raise ValueError(f"Layer spec has no 'type': {spec}")
    return {_snake_case(key): value for key, value in spec.items()}


def _pair(value: Any, name: str) -> Tuple[int, int]:
    if isinstance(value, int):
        return value, value
    if isinstance(value, Sequence) and len(value) == 2:
        return int(value[0]), int(value[1])
    raise ValueError(f"{name} must be an int or a pair of ints, got {value}")


def _as_shape(value: Any) -> Shape:
    if isinstance(value, int):
        return [value]
    return [int(v) for v in value]


def activation_module(name: Optional[str]) -> Optional[nn.Module]:
    if name is None:
        return None
    key = normalize_name(name)
    if key not in ACTIVATIONS:
        raise ValueError(f"Unknown activation '{name}'. Supported: {sorted(ACTIVATIONS)}")
    if key == "linear":
        return None
    return ACTIVATIONS[key]()


def _initialize(module: nn.Module, initializer: Optional[str]) -> None:
    if initializer is None:
        return
    key = normalize_name(initializer)
    if key not in INITIALIZERS:
        raise ValueError(f"Unknown kernel initializer '{initializer}'. Supported: {sorted(INITIALIZERS)}")
    INITIALIZERS[key](module.weight)


def _same_padding(size: int, kernel: int, stride: int) -> Tuple[int, int]:
    out = math.ceil(size / stride)
    total = max((out - 1) * stride + kernel - size, 0)
    return total // 2, total - total // 2


def _spatial(shape: Shape, layer_type: str) -> Tuple[int, int, int]:
    if len(shape) != 3:
        raise ValueError(f"{layer_type} expects input shape [height, width, channels], got {shape}")
    return shape[0], shape[1], shape[2]


def _dense(spec: Dict[str, Any], input_shape: Shape) -> Tuple[List[nn.Module], Shape]:
    if spec.get("units") is None:
        raise ValueError("dense layer needs 'units'")
    units = int(spec["units"])

    linear = nn.Linear(input_shape[-1], units, bias=spec.get("use_bias", True))
    _initialize(linear, spec.get("kernel_initializer"))

    modules: List[nn.Module] = [linear]
    activation = activation_module(spec.get("activation"))
    if activation is not None:
        modules.append(activation)
    return modules, input_shape[:-1] + [units]


def _conv2d(spec: Dict[str, Any], input_shape: Shape) -> Tuple[List[nn.Module], Shape]:
    height, width, channels = _spatial(input_shape, "conv2d")
    if spec.get("filters") is None or spec.get("kernel_size") is None:
        raise ValueError("conv2d layer needs 'filters' and 'kernel_size'")

    filters = int(spec["filters"])
    kernel = _pair(spec["kernel_size"], "kernel_size")
    strides = _pair(spec.get("strides", 1), "strides")
    padding = spec.get("padding", "valid").lower()

    conv = nn.Conv2d(channels, filters, kernel, stride=strides, bias=spec.get("use_bias", True))
    _initialize(conv, spec.get("kernel_initializer"))

    if padding == "same":
        pad_h = _same_padding(height, kernel[0], strides[0])
        pad_w = _same_padding(width, kernel[1], strides[1])
        inner = nn.Sequential(nn.ZeroPad2d((pad_w[0], pad_w[1], pad_h[0], pad_h[1])), conv)
        out_h, out_w = math.ceil(height / strides[0]), math.ceil(width / strides[1])
    elif padding == "valid":
        inner = conv
        out_h = (height - kernel[0]) // strides[0] + 1
        out_w = (width - kernel[1]) // strides[1] + 1
    else:
        raise ValueError(f"Unknown padding '{padding}', expected 'valid' or 'same'")

    if out_h < 1 or out_w < 1:
        raise ValueError(f"conv2d kernel {kernel} is larger than its input {input_shape}")

    modules: List[nn.Module] = [ChannelsFirst(inner)]
    activation = activation_module(spec.get("activation"))
    if activation is not None:
        modules.append(activation)
    return modules, [out_h, out_w, filters]


def _max_pooling2d(spec: Dict[str, Any], input_shape: Shape) -> Tuple[List[nn.Module], Shape]:
    height, width, channels = _spatial(input_shape, "max_pooling2d")
    pool = _pair(spec.get("pool_size", 2), "pool_size")
    strides = _pair(spec.get("strides") or pool, "strides")
    padding = spec.get("padding", "valid").lower()

    pooling = nn.MaxPool2d(pool, stride=strides)
    if padding == "same":
        pad_h = _same_padding(height, pool[0], strides[0])
        pad_w = _same_padding(width, pool[1], strides[1])
        inner = nn.Sequential(
            nn.ConstantPad2d((pad_w[0], pad_w[1], pad_h[0], pad_h[1]), float("-inf")),
            pooling,
        )
        out_h, out_w = math.ceil(height / strides[0]), math.ceil(width / strides[1])
    elif padding == "valid":
        inner = pooling
        out_h = (height - pool[0]) // strides[0] + 1
        out_w = (width - pool[1]) // strides[1] + 1
    else:
        raise ValueError(f"Unknown padding '{padding}', expected 'valid' or 'same'")

    if out_h < 1 or out_w < 1:
        raise ValueError(f"max_pooling2d pool {pool} is larger than its input {input_shape}")

    return [ChannelsFirst(inner)], [out_h, out_w, channels]


def _flatten(spec: Dict[str, Any], input_shape: Shape) -> Tuple[List[nn.Module], Shape]:
    return [nn.Flatten()], [math.prod(input_shape)]


def _dropout(spec: Dict[str, Any], input_shape: Shape) -> Tuple[List[nn.Module], Shape]:
    rate = float(spec.get("rate", 0.5))
    if not 0.0 <= rate < 1.0:
        raise ValueError(f"dropout rate must be in [0, 1), got {rate}")
    return [nn.Dropout(rate)], list(input_shape)


def _activation(spec: Dict[str, Any], input_shape: Shape) -> Tuple[List[nn.Module], Shape]:
    activation = activation_module(spec.get("activation"))
    return ([activation] if activation is not None else []), list(input_shape)


LAYER_BUILDERS = {
    "dense": _dense,
    "conv2d": _conv2d,
    "maxpooling2d": _max_pooling2d,
    "flatten": _flatten,
    "dropout": _dropout,
    "activation": _activation,
}


def build_layer(spec: Dict[str, Any], input_shape: Optional[Sequence[int]] = None) -> Tuple[List[nn.Module], Shape]:
    """
    Build the torch modules for one layer spec.

    Args:
        spec: Layer spec dict (camelCase or snake_case keys)
        input_shape: Output shape of the previous layer; None for the
            first layer, which must then declare ``input_shape``

    Returns:
        (modules, output_shape)

    Raises:
        ValueError: Unknown layer type or activation, missing options,
            or no input shape for the first layer
    """
    spec = normalize_spec(spec)
    layer_type = normalize_name(spec["type"])
    if layer_type not in LAYER_BUILDERS:
        raise ValueError(f"Unknown layer type '{spec['type']}'. Supported: {sorted(LAYER_BUILDERS)}")

    if spec.get("input_shape") is not None:
        input_shape = _as_shape(spec["input_shape"])
    if input_shape is None:
        raise ValueError(f"The first layer ({spec['type']}) needs an 'input_shape'")

    modules, output_shape = LAYER_BUILDERS[layer_type](spec, list(input_shape))
    logger.debug(f"{layer_type}: {list(input_shape)} -> {output_shape}")
    return modules, output_shape
