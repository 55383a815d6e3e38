"""
Sequential neural network built from layer specs.

Wraps a torch ``nn.Sequential``: layers are added as spec dicts, the
model is compiled with a loss and an optimiser, trained with a simple
minibatch loop and can be saved as a JSON topology plus a binary
weights file.
"""
import io as _io
import logging
from functools import partial
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Union

import numpy as np
import torch
import torch.nn as nn
import torch.nn.functional as F

from friendlyml.core.config import settings
from friendlyml.core.device import resolve_device
from friendlyml.neural_network.layers import build_layer, normalize_name, normalize_spec
from friendlyml.utils import io
from friendlyml.utils.callbacks import Callback, call_callback, is_callback

logger = logging.getLogger(__name__)

DEFAULT_LEARNING_RATE = 0.001
EPSILON = 1e-7

OPTIMIZERS = {
    "sgd": torch.optim.SGD,
    "adam": torch.optim.Adam,
    "adamax": torch.optim.Adamax,
    "adagrad": torch.optim.Adagrad,
    "adadelta": torch.optim.Adadelta,
    "rmsprop": torch.optim.RMSprop,
}


def categorical_crossentropy(predictions: torch.Tensor, targets: torch.Tensor) -> torch.Tensor:
    """Cross-entropy of probability outputs (softmax already applied) against one-hot targets."""
    predictions = predictions.clamp(EPSILON, 1.0 - EPSILON)
    return -(targets * predictions.log()).sum(dim=-1).mean()


def binary_crossentropy(predictions: torch.Tensor, targets: torch.Tensor) -> torch.Tensor:
    return F.binary_cross_entropy(predictions.clamp(EPSILON, 1.0 - EPSILON), targets)


LOSSES: Dict[str, Callable[[torch.Tensor, torch.Tensor], torch.Tensor]] = {
    "categoricalcrossentropy": categorical_crossentropy,
    "binarycrossentropy": binary_crossentropy,
    "meansquarederror": F.mse_loss,
    "mse": F.mse_loss,
    "meanabsoluteerror": F.l1_loss,
    "mae": F.l1_loss,
}


def _as_tensor(values: Any) -> torch.Tensor:
    if isinstance(values, torch.Tensor):
        return values.detach().float()
    return torch.as_tensor(np.asarray(values, dtype=np.float32))


class NeuralNetwork:
    """
    Sequential model with compile / train / predict / save / load.

    State flags follow the model lifecycle: ``is_layered`` once it has at
    least an input and an output layer, ``is_compiled`` after
    :meth:`compile` and ``is_trained`` after :meth:`train` or :meth:`load`.
    """

    def __init__(self, device: Optional[str] = None):
        self.device = resolve_device(device or settings.DEVICE)

        self.is_trained = False
        self.is_compiled = False
        self.is_layered = False

        self.model: Optional[nn.Sequential] = None
        self.layers: List[Dict[str, Any]] = []
        self.output_shape: Optional[List[int]] = None

        self.loss_name: Optional[str] = None
        self.loss_fn: Optional[Callable] = None
        self.optimizer: Optional[torch.optim.Optimizer] = None
        self.metrics: List[str] = []

        self.create_model()

    def create_model(self, model_type: str = "sequential") -> nn.Sequential:
        """Start an empty model. Only sequential models exist; other types fall back to it."""
        if model_type.lower() != "sequential":
            logger.warning(f"Model type '{model_type}' is not supported, creating a sequential model")

        self.model = nn.Sequential().to(self.device)
        self.layers = []
        self.output_shape = None
        self.is_layered = False
        self.is_compiled = False
        self.is_trained = False
        return self.model

    def add_layer(self, layer_spec: Dict[str, Any]) -> List[int]:
        """
        Append a layer.

        Args:
            layer_spec: Layer spec dict, see :mod:`friendlyml.neural_network.layers`

        Returns:
            Output shape of the model after this layer
        """
        spec = normalize_spec(layer_spec)
        modules, output_shape = build_layer(spec, self.output_shape)

        if self.output_shape is None:
            spec["input_shape"] = list(spec["input_shape"]) if isinstance(spec["input_shape"], (list, tuple)) else [spec["input_shape"]]

        for module in modules:
            self.model.append(module.to(self.device))

        self.layers.append(spec)
        self.output_shape = output_shape

        if len(self.layers) >= 2:
            self.is_layered = True

        return output_shape

    @staticmethod
    def set_optimizer_function(learning_rate: float, optimizer: Union[str, type, Callable]) -> Callable:
        """
        Bind a learning rate to an optimiser.

        Args:
            learning_rate: Learning rate
            optimizer: Optimiser name ("sgd", "adam", ...) or a torch optimiser class

        Returns:
            Factory taking model parameters and returning the optimiser
        """
        if isinstance(optimizer, str):
            key = normalize_name(optimizer)
            if key not in OPTIMIZERS:
                raise ValueError(f"Unknown optimizer '{optimizer}'. Supported: {sorted(OPTIMIZERS)}")
            optimizer = OPTIMIZERS[key]
        return partial(optimizer, lr=learning_rate)

    def compile(self, options: Dict[str, Any]) -> None:
        """
        Configure loss, optimiser and metrics.

        Args:
            options: {
                "loss": "categoricalCrossentropy" | "meanSquaredError" | ... | callable,
                "optimizer": name, optimiser class or factory from set_optimizer_function,
                "metrics": ["accuracy"],
                "learning_rate": used when optimizer is a name or class
            }

        Raises:
            ValueError: Unknown loss / optimiser, or no layers
        """
        if not self.layers:
            raise ValueError("Add layers to the model before compiling it")

        loss = options.get("loss")
        if loss is None:
            raise ValueError("compile() needs a 'loss'")
        if callable(loss):
            self.loss_name = getattr(loss, "__name__", "custom")
            self.loss_fn = loss
        else:
            key = normalize_name(loss)
            if key not in LOSSES:
                raise ValueError(f"Unknown loss '{loss}'. Supported: {sorted(LOSSES)}")
            self.loss_name = key
            self.loss_fn = LOSSES[key]

        optimizer = options.get("optimizer", "sgd")
        if isinstance(optimizer, (str, type)):
            optimizer = self.set_optimizer_function(options.get("learning_rate", DEFAULT_LEARNING_RATE), optimizer)
        self.optimizer = optimizer(self.model.parameters())

        self.metrics = [normalize_name(m) for m in options.get("metrics", [])]
        self.is_compiled = True

    def summary(self) -> str:
        lines = [f"Sequential model on {self.device}"]
        for index, spec in enumerate(self.layers):
            options = ", ".join(f"{k}={v}" for k, v in spec.items() if k != "type")
            lines.append(f"  {index}: {spec['type']}({options})")
        params = sum(p.numel() for p in self.model.parameters())
        lines.append(f"Output shape: {self.output_shape}, trainable params: {params}")
        return "\n".join(lines)

    # ------------------------------------------------------------------
    # Training
    # ------------------------------------------------------------------

    def train(self, options: Dict[str, Any], callback: Optional[Callback] = None) -> Dict[str, List[float]]:
        """
        Fit the model.

        Args:
            options: {
                "inputs": tensor (N, ...), "outputs": tensor (N, ...),
                "batch_size": 32, "epochs": 1, "shuffle": True,
                "validation_split": 0.0 (taken from the end, before shuffling),
                "while_training": callable(epoch, logs) or list of them
            }
            callback: Callback receiving (error, history)

        Returns:
            History: metric name -> per-epoch values
            ("loss", plus "acc", "val_loss", "val_acc" when available)
        """
        return call_callback(self._train_internal, callback, options)

    def _accuracy(self, predictions: torch.Tensor, targets: torch.Tensor) -> float:
        if self.loss_name == "categoricalcrossentropy":
            return (predictions.argmax(dim=-1) == targets.argmax(dim=-1)).float().mean().item()
        return (predictions.round() == targets).float().mean().item()

    def _evaluate(self, xs: torch.Tensor, ys: torch.Tensor) -> Dict[str, float]:
        self.model.eval()
        with torch.no_grad():
            predictions = self.model(xs)
            logs = {"loss": self.loss_fn(predictions, ys).item()}
            if "accuracy" in self.metrics or "acc" in self.metrics:
                logs["acc"] = self._accuracy(predictions, ys)
        return logs

    def _train_internal(self, options: Dict[str, Any]) -> Dict[str, List[float]]:
        if not self.is_compiled or self.loss_fn is None or self.optimizer is None:
            raise RuntimeError("The model must be compiled before training")
        if options.get("inputs") is None or options.get("outputs") is None:
            raise ValueError("Training needs 'inputs' and 'outputs'")

        xs = _as_tensor(options["inputs"]).to(self.device)
        ys = _as_tensor(options["outputs"]).to(self.device)
        if len(xs) != len(ys):
            raise ValueError(f"Got {len(xs)} inputs but {len(ys)} outputs")

        batch_size = int(options.get("batch_size") or 32)
        epochs = int(options.get("epochs") or 1)
        shuffle = options.get("shuffle", True)
        validation_split = float(options.get("validation_split") or 0.0)

        while_training = options.get("while_training") or []
        if not isinstance(while_training, (list, tuple)):
            while_training = [while_training]
        while_training = [fn for fn in while_training if fn is not None]

        val_xs = val_ys = None
        if validation_split > 0:
            split_at = int(np.floor(len(xs) * (1.0 - validation_split)))
            if split_at < 1:
                raise ValueError(f"Not enough samples ({len(xs)}) for validation_split={validation_split}")
            if split_at < len(xs):
                xs, val_xs = xs[:split_at], xs[split_at:]
                ys, val_ys = ys[:split_at], ys[split_at:]

        history: Dict[str, List[float]] = {}
        num_samples = len(xs)

        for epoch in range(epochs):
            self.model.train()
            order = torch.randperm(num_samples) if shuffle else torch.arange(num_samples)
            total_loss = 0.0

            for start in range(0, num_samples, batch_size):
                batch = order[start:start + batch_size]
                predictions = self.model(xs[batch])
                loss = self.loss_fn(predictions, ys[batch])

                self.optimizer.zero_grad()
                loss.backward()
                self.optimizer.step()

                total_loss += loss.item() * len(batch)

            logs = {"loss": total_loss / num_samples}
            if "accuracy" in self.metrics or "acc" in self.metrics:
                logs["acc"] = self._evaluate(xs, ys)["acc"]
            if val_xs is not None:
                val_logs = self._evaluate(val_xs, val_ys)
                logs.update({f"val_{name}": value for name, value in val_logs.items()})

            for name, value in logs.items():
                history.setdefault(name, []).append(value)

            for fn in while_training:
                fn(epoch, logs)

        self.is_trained = True
        if history:
            logger.info(f"Training finished after {epochs} epochs, loss {history['loss'][-1]:.4f}")
        return history

    # ------------------------------------------------------------------
    # Inference
    # ------------------------------------------------------------------

    def _forward(self, inputs: Any) -> List[List[float]]:
        if not self.layers:
            raise RuntimeError("The model has no layers")

        self.model.eval()
        with torch.no_grad():
            output = self.model(_as_tensor(inputs).to(self.device))
        return output.cpu().tolist()

    @staticmethod
    def _split_meta_and_callback(meta_or_callback, callback):
        if is_callback(meta_or_callback):
            return None, meta_or_callback
        return meta_or_callback, callback

    def predict(self, inputs: Any, meta_or_callback: Union[Dict[str, Any], Callback, None] = None, callback: Optional[Callback] = None) -> List:
        """
        Run the model.

        Without meta the raw outputs (list per input row) are returned. With
        meta, the first row is labelled with the output names::

            [{"price": 12.3, "label": "price", "value": 12.3}]

        Values are un-normalised when ``meta["is_normalized"]``.
        """
        meta, callback = self._split_meta_and_callback(meta_or_callback, callback)
        return call_callback(self._predict_internal, callback, inputs, meta)

    def _predict_internal(self, inputs: Any, meta: Optional[Dict[str, Any]]) -> List:
        result = self._forward(inputs)
        if meta is None:
            return result

        results = []
        for index, label in enumerate(meta["outputs"]):
            value = result[0][index]
            if meta.get("is_normalized"):
                output_meta = meta["outputs"][label]
                value = self.un_normalize_value(value, output_meta["min"], output_meta["max"])
            results.append({label: value, "label": label, "value": value})
        return results

    def classify(self, inputs: Any, meta_or_callback: Union[Dict[str, Any], Callback, None] = None, callback: Optional[Callback] = None) -> List:
        """
        Run the model and label class probabilities.

        With meta, returns the first row as
        ``[{"red": 0.8, "label": "red", "confidence": 0.8}, ...]`` sorted by
        confidence (classes come from the legend of the first output).
        """
        meta, callback = self._split_meta_and_callback(meta_or_callback, callback)
        return call_callback(self._classify_internal, callback, inputs, meta)

    def _classify_internal(self, inputs: Any, meta: Optional[Dict[str, Any]]) -> List:
        result = self._forward(inputs)
        if meta is None:
            return result

        label = next(iter(meta["outputs"]))
        legend = meta["outputs"][label].get("legend")
        if not legend:
            raise ValueError(f"Output '{label}' has no class legend, use predict() for numeric outputs")

        results = [
            {name: result[0][index], "label": name, "confidence": result[0][index]}
            for index, name in enumerate(legend)
        ]
        return sorted(results, key=lambda item: item["confidence"], reverse=True)

    @staticmethod
    def un_normalize_value(value: float, min_value: float, max_value: float) -> float:
        return value * (max_value - min_value) + min_value

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def save(self, name_or_callback: Union[str, Callback, None] = None, callback: Optional[Callback] = None, output_dir: Union[str, Path] = ".") -> Dict[str, Path]:
        """
        Save the model as ``<name>.json`` (topology and weights manifest)
        and ``<name>.weights.bin`` (torch state dict). Name defaults to "model".

        Returns:
            {"model": json path, "weights": weights path}
        """
        if is_callback(name_or_callback):
            model_name, callback = "model", name_or_callback
        else:
            model_name = name_or_callback or "model"

        return call_callback(self._save_internal, callback, model_name, Path(output_dir))

    def _save_internal(self, model_name: str, output_dir: Path) -> Dict[str, Path]:
        if not self.layers:
            raise RuntimeError("The model has no layers to save")

        state_dict = self.model.state_dict()
        buffer = _io.BytesIO()
        torch.save(state_dict, buffer)

        weights_file = f"{model_name}.weights.bin"
        manifest = {
            "model_topology": {"class_name": "Sequential", "layers": self.layers},
            "weights_manifest": [{
                "paths": [f"./{weights_file}"],
                "weights": [
                    {"name": key, "shape": list(tensor.shape), "dtype": str(tensor.dtype).replace("torch.", "")}
                    for key, tensor in state_dict.items()
                ],
            }],
        }

        weights_path = io.save_blob(buffer.getvalue(), output_dir / weights_file)
        model_path = io.save_json(manifest, output_dir / f"{model_name}.json")
        return {"model": model_path, "weights": weights_path}

    def load(self, files_or_path: Union[str, Path, Dict[str, Any], List], callback: Optional[Callback] = None) -> nn.Sequential:
        """
        Load a model saved by :meth:`save`.

        Args:
            files_or_path: Path or URL of the model ``.json`` (weights are
                looked up next to it), a dict ``{"model": ..., "weights": ...}``
                or a list of file paths (the ``.json`` and ``.bin`` files)
            callback: Callback receiving (error, model)
        """
        return call_callback(self._load_internal, callback, files_or_path)

    def _load_internal(self, files_or_path) -> nn.Sequential:
        if isinstance(files_or_path, dict):
            model_source = files_or_path.get("model")
            weights_source = files_or_path.get("weights")
        elif isinstance(files_or_path, (list, tuple)):
            names = [str(f) for f in files_or_path]
            model_source = next((f for f in names if f.endswith(".json") and "_meta" not in f), None)
            weights_source = next((f for f in names if f.endswith(".bin")), None)
        else:
            model_source = str(files_or_path)
            weights_source = None

        if model_source is None:
            raise ValueError("No model .json file given")

        manifest = io.load_json(model_source)
        try:
            layers = manifest["model_topology"]["layers"]
        except (KeyError, TypeError) as e:
            raise ValueError(f"{model_source} is not a saved model: missing model_topology.layers") from e

        if weights_source is None:
            weights_source = self._weights_next_to(model_source, manifest)

        self.create_model()
        for spec in layers:
            self.add_layer(spec)

        state_dict = torch.load(_io.BytesIO(io.read_bytes(weights_source)), map_location=self.device, weights_only=True)
        self.model.load_state_dict(state_dict)

        self.is_compiled = True
        self.is_layered = True
        self.is_trained = True
        logger.info(f"Loaded model from {model_source} ({len(layers)} layers)")
        return self.model

    @staticmethod
    def _weights_next_to(model_source: str, manifest: Dict[str, Any]) -> str:
        paths = manifest.get("weights_manifest", [{}])[0].get("paths") or []
        if not paths:
            raise ValueError(f"{model_source} has no weights path in its manifest")
        weights_file = paths[0][2:] if paths[0].startswith("./") else paths[0]

        if io.is_url(model_source):
            return model_source.rsplit("/", 1)[0] + "/" + weights_file
        return str(Path(model_source).parent / weights_file)
