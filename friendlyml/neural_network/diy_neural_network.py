"""
Do-it-yourself neural network.

Collects data, derives metadata, builds a default (or custom) model for
classification or regression, trains it and labels predictions, so a
model can be trained from a handful of ``add_data`` calls::

    nn = neural_network({"inputs": ["r", "g", "b"], "outputs": ["color"], "task": "classification"})
    nn.add_data([255, 0, 0], ["red"])
    nn.add_data([0, 0, 255], ["blue"])
    nn.normalize_data()
    nn.train({"epochs": 50})
    nn.classify([250, 10, 5])
"""
import copy
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import numpy as np
import torch

from friendlyml.neural_network.neural_network import NeuralNetwork
from friendlyml.neural_network.neural_network_data import NeuralNetworkData
from friendlyml.utils.callbacks import Callback, call_callback, is_callback

logger = logging.getLogger(__name__)

DEFAULTS: Dict[str, Any] = {
    "inputs": [],
    "outputs": [],
    "data_url": None,
    "model_url": None,
    "layers": [],
    "task": None,
    "debug": False,
    "learning_rate": None,
    "image_shape": None,
}

TRAINING_DEFAULTS: Dict[str, Any] = {
    "epochs": 10,
    "batch_size": 32,
    "validation_split": 0.1,
}

DEFAULT_LEARNING_RATE = 0.2


class DiyNeuralNetwork:
    """
    Façade over :class:`NeuralNetwork` and :class:`NeuralNetworkData`.

    Options (see DEFAULTS):
    - inputs / outputs: column names of the data
    - data_url: CSV or JSON file/URL to load at construction
    - model_url: saved model to load at construction
    - layers: custom layer specs (first input shape and last units are
      filled in from the data)
    - task: "classification" or "regression"
    - debug: log the model summary and training progress
    - learning_rate: learning rate used by compile()
    - image_shape: [height, width, channels] for flat image inputs
    """

    def __init__(self, options: Optional[Dict[str, Any]] = None, callback: Optional[Callback] = None):
        self.options = {**DEFAULTS, **(options or {})}
        self.callback = callback

        self.neural_network = NeuralNetwork()
        self.neural_network_data = NeuralNetworkData(image_shape=self.options["image_shape"])

        self.data: Dict[str, List] = {"training": []}
        self.ready = False

        call_callback(self._init_internal, callback)

    def _init_internal(self) -> "DiyNeuralNetwork":
        if self.options["data_url"] is not None:
            self._load_data_internal(self.options)
        elif self.options["model_url"] is not None:
            self._load_internal(self.options["model_url"])
        self.ready = True
        return self

    def load_data_from_url(self, options: Dict[str, Any], callback: Optional[Callback] = None) -> "DiyNeuralNetwork":
        return call_callback(self._load_data_internal, callback, options)

    def _load_data_internal(self, options: Dict[str, Any]) -> "DiyNeuralNetwork":
        data_url = str(options["data_url"])
        inputs, outputs = options["inputs"], options["outputs"]

        if data_url.endswith(".csv"):
            self.neural_network_data.load_csv(data_url, inputs, outputs)
        elif data_url.endswith(".json"):
            self.neural_network_data.load_json(data_url, inputs, outputs)
        else:
            self.neural_network_data.load_blob(data_url, inputs, outputs)

        # prepare metadata and encodings right away
        self.create_metadata_from_data()
        self.warm_up()
        return self

    # ------------------------------------------------------------------
    # Data preparation
    # ------------------------------------------------------------------

    def create_metadata_from_data(self, data_raw: Optional[List] = None) -> Dict[str, Any]:
        data_raw = self.neural_network_data.data["raw"] if data_raw is None else data_raw

        meta = self.neural_network_data.create_metadata_from_data(data_raw)
        self.neural_network_data.meta = meta
        self.neural_network_data.is_metadata_ready = True
        return meta

    def summarize_data(self, data_raw: Optional[List] = None, meta: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """Add min and max to the metadata of each input and output."""
        data_raw = self.neural_network_data.data["raw"] if data_raw is None else data_raw
        meta = self.neural_network_data.meta if meta is None else meta

        self.neural_network_data.meta["inputs"] = self.neural_network_data.get_raw_stats(data_raw, meta["inputs"], "xs")
        self.neural_network_data.meta["outputs"] = self.neural_network_data.get_raw_stats(data_raw, meta["outputs"], "ys")
        return self.neural_network_data.meta

    def warm_up(self, data_raw: Optional[List] = None, meta: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """Summarise the data and one-hot encode it into the training set."""
        data_raw = self.neural_network_data.data["raw"] if data_raw is None else data_raw
        meta = self.neural_network_data.meta if meta is None else meta

        updated_meta = self.summarize_data(data_raw, meta)
        encoded = self.neural_network_data.apply_one_hot_encodings_to_data_raw(data_raw, meta)

        self.data["training"] = encoded
        self.neural_network_data.is_warmed_up = True

        return {"meta": updated_meta, "data": {"raw": encoded}}

    def convert_training_data_to_tensors(self, training_data: Optional[List] = None, meta: Optional[Dict[str, Any]] = None) -> Dict[str, torch.Tensor]:
        training_data = self.data["training"] if training_data is None else training_data
        meta = self.neural_network_data.meta if meta is None else meta
        return self.neural_network_data.convert_raw_to_tensors(training_data, meta)

    def convert_training_image_data_to_tensors(self, training_data: Optional[List] = None, meta: Optional[Dict[str, Any]] = None) -> Dict[str, torch.Tensor]:
        training_data = self.data["training"] if training_data is None else training_data
        meta = self.neural_network_data.meta if meta is None else meta
        return self.neural_network_data.convert_image_data_to_tensors(training_data, meta)

    def normalize_data(self, data_raw: Optional[List] = None, meta: Optional[Dict[str, Any]] = None) -> List:
        """Scale numeric values to [0, 1] and one-hot encode categorical ones."""
        if not self.neural_network_data.is_metadata_ready:
            self.create_metadata_from_data()
        if not self.neural_network_data.is_warmed_up:
            self.warm_up()

        data_raw = self.neural_network_data.data["raw"] if data_raw is None else data_raw
        meta = self.neural_network_data.meta if meta is None else meta

        normalized_inputs = self.neural_network_data.normalize_raws(data_raw, meta["inputs"], "xs")
        normalized_outputs = self.neural_network_data.normalize_raws(data_raw, meta["outputs"], "ys")
        training_data = self.neural_network_data.zip_arrays(normalized_inputs, normalized_outputs)

        self.data["training"] = training_data
        self.neural_network_data.meta["is_normalized"] = True
        return training_data

    def add_data(self, x_inputs: Any, y_inputs: Any, options: Optional[Dict[str, Any]] = None) -> None:
        """
        Add one training row. Labels come from ``options`` ("input_labels",
        "output_labels"), else from the constructor inputs / outputs.
        """
        input_labels = output_labels = None
        if options is not None:
            input_labels = options.get("input_labels")
            output_labels = options.get("output_labels")
        elif self.options["inputs"] and self.options["outputs"]:
            input_labels = self.options["inputs"]
            output_labels = self.options["outputs"]

        data_options = None
        if input_labels and output_labels:
            data_options = {"input_labels": input_labels, "output_labels": output_labels}

        self.neural_network_data.add_data(x_inputs, y_inputs, data_options)

    # ------------------------------------------------------------------
    # Training
    # ------------------------------------------------------------------

    def train(self, options_or_callback=None, options_or_while_training=None, callback: Optional[Callback] = None) -> Dict[str, List[float]]:
        """
        Train the model.

        Call forms:
        - ``train(options, while_training, finished)``
        - ``train(options, finished)``
        - ``train(while_training, finished)``
        - ``train(finished)`` / ``train(options)`` / ``train()``

        ``while_training`` is called as ``while_training(epoch, logs)``;
        ``finished`` receives (error, history).

        Returns:
            Training history (metric name -> per-epoch values)
        """
        options: Dict[str, Any] = {}
        while_training = None
        finished = None

        if isinstance(options_or_callback, dict):
            options = options_or_callback
            if is_callback(options_or_while_training) and is_callback(callback):
                while_training, finished = options_or_while_training, callback
            elif is_callback(options_or_while_training):
                finished = options_or_while_training
        elif is_callback(options_or_callback) and is_callback(options_or_while_training):
            while_training, finished = options_or_callback, options_or_while_training
        elif is_callback(options_or_callback):
            finished = options_or_callback

        return self._train_internal(options, while_training, finished)

    def _log_epoch(self, epoch: int, logs: Dict[str, float]) -> None:
        metrics = ", ".join(f"{name}: {value:.4f}" for name, value in logs.items())
        logger.info(f"Epoch {epoch + 1}: {metrics}")

    def _has_image_inputs(self) -> bool:
        return any(column.get("dtype") == "object" for column in self.neural_network_data.meta["inputs"].values())

    def _train_internal(self, train_options: Dict[str, Any], while_training: Optional[Callback], finished: Optional[Callback]) -> Dict[str, List[float]]:
        options = {**TRAINING_DEFAULTS, **train_options}

        callbacks = [while_training]
        if self.options["debug"]:
            callbacks.append(self._log_epoch)
        options["while_training"] = [cb for cb in callbacks if cb is not None]

        if not self.neural_network_data.is_metadata_ready:
            self.create_metadata_from_data()
        if not self.neural_network_data.is_warmed_up:
            self.warm_up()

        if options.get("inputs") is None and options.get("outputs") is None:
            if options.get("on_image_data") or self._has_image_inputs():
                tensors = self.convert_training_image_data_to_tensors()
            else:
                tensors = self.convert_training_data_to_tensors()
            options["inputs"] = tensors["inputs"]
            options["outputs"] = tensors["outputs"]

        if not self.neural_network.is_layered:
            self.add_custom_layers()
        if not self.neural_network.is_layered:
            self.add_default_layers(self.options["task"])

        if not self.neural_network.is_compiled or self.neural_network.loss_fn is None:
            self.compile()

        return self.neural_network.train(options, finished)

    def add_custom_layers(self) -> bool:
        """
        Add the layers given in the options.

        The first layer's input shape defaults to the data's input units and
        the last layer's units to the output units.

        Returns:
            False when fewer than two layers are configured
        """
        layers = self.options["layers"]
        if len(layers) < 2:
            return False

        meta = self.neural_network_data.meta
        layers = copy.deepcopy(layers)

        first = layers[0]
        input_shape = first.get("input_shape", first.get("inputShape")) or meta["input_units"]
        first.pop("inputShape", None)
        first["input_shape"] = input_shape if isinstance(input_shape, (list, tuple)) else [input_shape]

        last = layers[-1]
        if not last.get("units"):
            last["units"] = meta["output_units"]

        for layer in layers:
            self.add_layer(layer)
        return True

    def add_default_layers(self, task: Optional[str]) -> None:
        """
        Add a two-layer dense network for the task. Image classification
        gets two conv / pool blocks in front of the softmax layer.

        Raises:
            ValueError: Unknown or missing task
        """
        meta = self.neural_network_data.meta
        task_name = (task or "").lower()
        input_units = meta["input_units"]
        input_shape = list(input_units) if isinstance(input_units, (list, tuple)) else [input_units]

        if task_name == "classification" and len(input_shape) == 3:
            self.add_layer(self.create_conv2d_layer({"input_shape": input_shape}))
            self.add_layer({"type": "max_pooling2d", "pool_size": 2, "strides": 2})
            self.add_layer(self.create_conv2d_layer({"filters": 16}))
            self.add_layer({"type": "max_pooling2d", "pool_size": 2, "strides": 2})
            self.add_layer({"type": "flatten"})
            self.add_layer(self.create_dense_layer({"units": meta["output_units"], "activation": "softmax"}))
        elif task_name == "classification":
            self.add_layer(self.create_dense_layer({"input_shape": input_shape}))
            self.add_layer(self.create_dense_layer({"units": meta["output_units"], "activation": "softmax"}))
        elif task_name == "regression":
            self.add_layer(self.create_dense_layer({"input_shape": input_shape}))
            self.add_layer(self.create_dense_layer({"units": meta["output_units"], "activation": "sigmoid"}))
        else:
            raise ValueError(
                f"Unknown task '{task}': set task to 'classification' or 'regression', or pass custom layers"
            )

    def compile(self, model_options: Optional[Dict[str, Any]] = None, learning_rate: Optional[float] = None) -> None:
        """
        Compile with task defaults.

        classification: categorical cross-entropy, sgd, accuracy
        regression: mean squared error, adam, accuracy
        The learning rate defaults to the ``learning_rate`` option, then 0.2.
        """
        if learning_rate is None:
            learning_rate = self.options["learning_rate"] or DEFAULT_LEARNING_RATE

        if model_options is not None:
            options = dict(model_options)
        elif self.options["task"] == "classification":
            options = {"loss": "categoricalCrossentropy", "optimizer": "sgd", "metrics": ["accuracy"]}
        elif self.options["task"] == "regression":
            options = {"loss": "meanSquaredError", "optimizer": "adam", "metrics": ["accuracy"]}
        else:
            raise ValueError("No task set: pass model_options with a 'loss' or set task")

        optimizer = options.get("optimizer") or "sgd"
        if isinstance(optimizer, (str, type)):
            optimizer = self.neural_network.set_optimizer_function(learning_rate, optimizer)
        options["optimizer"] = optimizer

        self.neural_network.compile(options)

        if self.options["debug"]:
            logger.info(f"Model Summary\n{self.neural_network.summary()}")

    # ------------------------------------------------------------------
    # Prediction
    # ------------------------------------------------------------------

    def predict(self, inputs: Any, callback: Optional[Callback] = None) -> List:
        return call_callback(self._predict_internal, callback, inputs)

    def predict_multiple(self, inputs: Any, callback: Optional[Callback] = None) -> List:
        return call_callback(self._predict_internal, callback, inputs)

    def classify(self, inputs: Any, callback: Optional[Callback] = None) -> List:
        return call_callback(self._classify_internal, callback, inputs)

    def classify_multiple(self, inputs: Any, callback: Optional[Callback] = None) -> List:
        return call_callback(self._classify_internal, callback, inputs)

    def format_inputs_for_prediction(self, inputs: Any, meta: Dict[str, Any], input_headers: List[str]) -> List[float]:
        """Encode one input (list in header order, or dict by name) the way the training data was."""
        if isinstance(inputs, dict):
            missing = [header for header in input_headers if header not in inputs]
            if missing:
                raise ValueError(f"Input is missing {missing}")
            values = [self.is_one_hot_encoded_or_normalized(inputs[header], header, meta["inputs"]) for header in input_headers]
        elif isinstance(inputs, (list, tuple, np.ndarray)):
            if len(inputs) != len(input_headers):
                raise ValueError(f"Got {len(inputs)} input values, expected {len(input_headers)} ({input_headers})")
            values = [self.is_one_hot_encoded_or_normalized(inputs[index], header, meta["inputs"]) for index, header in enumerate(input_headers)]
        else:
            raise ValueError(f"Unsupported input of type {type(inputs).__name__}, pass a list or a dict")

        flat: List[float] = []
        for value in values:
            flat.extend(value if isinstance(value, list) else [value])
        return flat

    def _is_batch(self, inputs: Any) -> bool:
        return isinstance(inputs, (list, tuple)) and len(inputs) > 0 and all(
            isinstance(item, (list, tuple, dict, np.ndarray)) for item in inputs
        )

    def format_inputs_for_prediction_all(self, inputs: Any, meta: Dict[str, Any], input_headers: List[str]) -> torch.Tensor:
        """Encode one input or a batch of inputs into a (N, input_units) tensor."""
        if self._is_batch(inputs):
            rows = [self.format_inputs_for_prediction(item, meta, input_headers) for item in inputs]
        else:
            rows = [self.format_inputs_for_prediction(inputs, meta, input_headers)]
        return torch.tensor(rows, dtype=torch.float32)

    def _require_meta(self) -> Dict[str, Any]:
        meta = self.neural_network_data.meta
        if not meta.get("inputs") or not meta.get("outputs"):
            raise RuntimeError("There is no model metadata: train or load a model first")
        return meta

    def _predict_internal(self, inputs: Any) -> List:
        meta = self._require_meta()
        headers = list(meta["inputs"])

        input_data = self.format_inputs_for_prediction_all(inputs, meta, headers)
        raw_results = self.neural_network.predict(input_data)

        labels = list(meta["outputs"])
        formatted = []
        for raw in raw_results:
            row = []
            for index, label in enumerate(labels):
                value = raw[index]
                entry: Dict[str, Any]
                if meta.get("is_normalized"):
                    output_meta = meta["outputs"][label]
                    unnormalized = self.neural_network_data.un_normalize_value(value, output_meta["min"], output_meta["max"])
                    entry = {label: unnormalized, "label": label, "value": unnormalized, "normalized_value": value}
                else:
                    entry = {label: value, "label": label, "value": value}
                row.append(entry)
            formatted.append(row)

        return formatted if self._is_batch(inputs) else formatted[0]

    def _label_classes(self, raw_results: List[List[float]], meta: Dict[str, Any]) -> List[List[Dict[str, Any]]]:
        label = next(iter(meta["outputs"]))
        legend = meta["outputs"][label].get("legend")
        if not legend:
            raise ValueError(f"Output '{label}' is not categorical, use predict() instead of classify()")

        formatted = []
        for raw in raw_results:
            row = [
                {name: raw[index], "label": name, "confidence": raw[index]}
                for index, name in enumerate(legend)
            ]
            formatted.append(sorted(row, key=lambda item: item["confidence"], reverse=True))
        return formatted

    def _classify_internal(self, inputs: Any) -> List:
        meta = self._require_meta()
        headers = list(meta["inputs"])

        input_data = self.format_inputs_for_prediction_all(inputs, meta, headers)
        formatted = self._label_classes(self.neural_network.classify(input_data), meta)

        return formatted if self._is_batch(inputs) else formatted[0]

    def classify_image(self, image: Any, callback: Optional[Callback] = None, options: Union[List[int], Dict[str, int], None] = None) -> List:
        """
        Classify one image.

        Args:
            image: Pixel values (flat or (height, width, channels)), numpy array or tensor
            callback: Callback receiving (error, results)
            options: [height, width, channels] or {"height", "width", "channels"};
                defaults to the input units of the metadata
        """
        return call_callback(self._classify_image_internal, callback, image, options)

    def _classify_image_internal(self, image: Any, options) -> List:
        meta = self._require_meta()
        options = meta["input_units"] if options is None else options

        if isinstance(options, dict):
            shape = [options["height"], options["width"], options["channels"]]
        else:
            shape = list(options)

        if isinstance(image, torch.Tensor):
            image = image.detach().cpu().numpy()
        pixels = np.asarray(image, dtype=np.float32).ravel()

        if meta.get("is_normalized"):
            image_meta = meta["inputs"].get("image")
            if image_meta is None:
                raise ValueError(
                    f"Normalized image classification needs an input named 'image', found {list(meta['inputs'])}"
                )
            pixels = np.asarray(self.neural_network_data.normalize_array(pixels, image_meta), dtype=np.float32)

        if pixels.size != int(np.prod(shape)):
            raise ValueError(f"Image has {pixels.size} values, expected shape {shape}")

        input_data = torch.from_numpy(pixels.reshape([1] + shape))
        return self._label_classes(self.neural_network.classify(input_data), meta)[0]

    def is_one_hot_encoded_or_normalized(self, value: Any, key: str, inputs_meta: Dict[str, Any]) -> Any:
        """Encode a categorical value with its legend or normalise a number."""
        if isinstance(value, (bool, str)) or not isinstance(value, (int, float, np.number)):
            legend = inputs_meta[key].get("legend") or {}
            if str(value) not in legend:
                raise ValueError(f"Unknown value {value!r} for input '{key}', expected one of {list(legend)}")
            return legend[str(value)]

        if self.neural_network_data.meta.get("is_normalized"):
            return self.normalize_input(value, key, inputs_meta)
        return value

    def normalize_input(self, value: float, key: str, inputs_meta: Dict[str, Any]) -> float:
        return self.neural_network_data.normalize_value(value, inputs_meta[key]["min"], inputs_meta[key]["max"])

    # ------------------------------------------------------------------
    # Layers
    # ------------------------------------------------------------------

    def add_layer(self, layer: Dict[str, Any]) -> None:
        self.neural_network.add_layer(layer)

    @staticmethod
    def create_dense_layer(options: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        return {"type": "dense", "units": 16, "activation": "relu", **(options or {})}

    @staticmethod
    def create_conv2d_layer(options: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        return {
            "type": "conv2d",
            "kernel_size": 5,
            "filters": 8,
            "strides": 1,
            "activation": "relu",
            "kernel_initializer": "variance_scaling",
            **(options or {}),
        }

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def save(self, name_or_callback: Union[str, Callback, None] = None, callback: Optional[Callback] = None, output_dir: Union[str, Path] = ".") -> Dict[str, Path]:
        """
        Save model, weights and metadata as ``<name>.json``,
        ``<name>.weights.bin`` and ``<name>_meta.json``.

        Returns:
            {"model": path, "weights": path, "metadata": path}
        """
        if is_callback(name_or_callback):
            model_name, callback = "model", name_or_callback
        else:
            model_name = name_or_callback or "model"

        return call_callback(self._save_internal, callback, model_name, output_dir)

    def _save_internal(self, model_name: str, output_dir) -> Dict[str, Path]:
        paths = self.neural_network.save(model_name, output_dir=output_dir)
        paths["metadata"] = self.neural_network_data.save_meta(model_name, output_dir=output_dir)
        return paths

    def load(self, files_or_path: Union[str, Path, Dict[str, Any], List], callback: Optional[Callback] = None) -> "DiyNeuralNetwork":
        """Load a model and its metadata, see :meth:`NeuralNetwork.load`."""
        return call_callback(self._load_internal, callback, files_or_path)

    def _load_internal(self, files_or_path) -> "DiyNeuralNetwork":
        self.neural_network.load(files_or_path)
        self.neural_network_data.load_meta(files_or_path)
        return self

    def save_data(self, name: Optional[str] = None, output_dir: Union[str, Path] = ".") -> Path:
        return self.neural_network_data.save_data(name, output_dir)

    def load_data(self, files_or_path: Union[str, Path, List], callback: Optional[Callback] = None) -> List:
        return self.neural_network_data.load_data(files_or_path, callback)


def neural_network(inputs_or_options: Union[Dict[str, Any], List[str], None] = None, outputs_or_callback=None, callback: Optional[Callback] = None) -> DiyNeuralNetwork:
    """
    Factory function to create a DiyNeuralNetwork.

    ``neural_network(options, callback)`` or
    ``neural_network(inputs, outputs, callback)``.
    """
    if isinstance(inputs_or_options, dict) or inputs_or_options is None:
        options = inputs_or_options or {}
        cb = outputs_or_callback
    else:
        options = {"inputs": inputs_or_options, "outputs": outputs_or_callback}
        cb = callback

    return DiyNeuralNetwork(options, cb)
