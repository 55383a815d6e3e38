"""
Training data handling for the neural network.

Keeps rows as ``{"xs": {name: value}, "ys": {name: value}}``, derives
metadata from them (dtypes, min/max, one-hot legends for categorical
values, input/output unit counts), normalises values and turns rows
into tensors. Also loads rows from CSV / JSON and saves data and
metadata.
"""
import csv
import io as _io
import json
import logging
from datetime import datetime
from numbers import Number
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Union

import numpy as np
import torch

from friendlyml.utils import io
from friendlyml.utils.callbacks import Callback, call_callback, is_callback

logger = logging.getLogger(__name__)

DEFAULT_IMAGE_SHAPE = [64, 64, 4]
CATEGORICAL_DTYPES = ("string", "boolean")

Row = Dict[str, Dict[str, Any]]
Meta = Dict[str, Any]


def _is_number(value: Any) -> bool:
    return isinstance(value, (Number, np.number)) and not isinstance(value, (bool, np.bool_))


def dtype_of(value: Any) -> str:
    """Describe a value the way the metadata does: number, string, boolean or object."""
    if isinstance(value, (bool, np.bool_)):
        return "boolean"
    if _is_number(value):
        return "number"
    if isinstance(value, str):
        return "string"
    return "object"


def _coerce(value: str) -> Any:
    try:
        return float(value)
    except ValueError:
        return value


def _flatten(value: Any) -> List[Any]:
    if isinstance(value, (np.ndarray, torch.Tensor)):
        return np.asarray(value).ravel().tolist()
    if isinstance(value, (list, tuple)):
        flat: List[Any] = []
        for item in value:
            flat.extend(_flatten(item))
        return flat
    return [value]


def _empty_meta() -> Meta:
    return {
        "input_units": None,
        "output_units": None,
        "inputs": {},
        "outputs": {},
        "is_normalized": False,
    }


class NeuralNetworkData:
    """
    Rows, metadata and conversions for neural network training.

    Attributes:
        meta: {"input_units", "output_units", "inputs", "outputs", "is_normalized"};
            ``inputs`` / ``outputs`` map names to {"dtype", "min", "max",
            "unique_values"?, "legend"?}
        data: {"raw": [{"xs": {...}, "ys": {...}}, ...]}
    """

    def __init__(self, image_shape: Optional[Sequence[int]] = None):
        self.meta: Meta = _empty_meta()
        self.is_metadata_ready = False
        self.is_warmed_up = False
        self.image_shape = list(image_shape) if image_shape else list(DEFAULT_IMAGE_SHAPE)
        self.data: Dict[str, List[Row]] = {"raw": []}

    # ------------------------------------------------------------------
    # Normalisation
    # ------------------------------------------------------------------

    def normalize_raws(self, data_raw: List[Row], input_or_output_meta: Dict[str, Any], xs_or_ys: str) -> List[Row]:
        """
        Normalise every column of ``data_raw[*][xs_or_ys]`` with its min/max.

        Categorical columns are replaced by their one-hot vectors.
        """
        normalized: Dict[str, List[Any]] = {}
        for key, column_meta in input_or_output_meta.items():
            values = self.array_from_label(data_raw, xs_or_ys, key)
            options = {"min": column_meta.get("min"), "max": column_meta.get("max")}
            if column_meta.get("legend"):
                options["legend"] = column_meta["legend"]

            if values and all(isinstance(v, (list, tuple, np.ndarray)) for v in values):
                normalized[key] = [self.normalize_array(v, options) for v in values]
            else:
                normalized[key] = self.normalize_array(values, options)

        return [
            {xs_or_ys: {key: normalized[key][index] for key in input_or_output_meta}}
            for index in range(len(data_raw))
        ]

    def normalize_array(self, values: Sequence[Any], options: Dict[str, Any]) -> List[Any]:
        """Scale numeric values to [0, 1]; one-hot encode categorical ones when a legend is given."""
        values = _flatten(values)

        if not all(_is_number(v) for v in values):
            legend = options.get("legend")
            if legend:
                return [legend.get(str(v), v) for v in values]
            return values

        array = np.asarray(values, dtype=np.float64)
        min_value, max_value = options["min"], options["max"]
        if max_value == min_value:
            return np.zeros_like(array).tolist()
        return ((array - min_value) / (max_value - min_value)).tolist()

    def un_normalize_array(self, values: Sequence[Any], options: Dict[str, Any]) -> List[Any]:
        """Invert :meth:`normalize_array`; one-hot vectors are mapped back to their legend key."""
        values = list(values)

        if not all(_is_number(v) for v in values):
            legend = options.get("legend")
            if legend:
                decoded = []
                for value in values:
                    match = None
                    for key, encoding in legend.items():
                        if list(value) == list(encoding):
                            match = key
                    decoded.append(match)
                return decoded
            return values

        return [self.un_normalize_value(v, options["min"], options["max"]) for v in values]

    @staticmethod
    def normalize_value(value: float, min_value: float, max_value: float) -> float:
        if max_value == min_value:
            return 0.0
        return (value - min_value) / (max_value - min_value)

    @staticmethod
    def un_normalize_value(value: float, min_value: float, max_value: float) -> float:
        return value * (max_value - min_value) + min_value

    # ------------------------------------------------------------------
    # Stats and encodings
    # ------------------------------------------------------------------

    def get_raw_stats(self, data_raw: List[Row], input_or_output_meta: Dict[str, Any], xs_or_ys: str) -> Dict[str, Any]:
        """Add "min" and "max" to each column's metadata."""
        meta = {key: dict(value) for key, value in input_or_output_meta.items()}

        for key, column_meta in meta.items():
            values = self.array_from_label(data_raw, xs_or_ys, key)
            if column_meta["dtype"] == "object":
                flat = [v for value in values for v in _flatten(value)]
                column_meta["min"] = self.get_min(flat)
                column_meta["max"] = self.get_max(flat)
            elif column_meta["dtype"] != "number":
                column_meta["min"] = 0
                column_meta["max"] = 1
            else:
                column_meta["min"] = self.get_min(values)
                column_meta["max"] = self.get_max(values)

        return meta

    @staticmethod
    def create_one_hot_encodings(unique_values: Sequence[Any]) -> Dict[str, Any]:
        """
        Build a legend mapping each value to its one-hot vector.

        Returns:
            {"unique_values": [...], "legend": {str(value): [0, 1, 0], ...}}
        """
        unique_values = list(unique_values)
        encodings = np.eye(len(unique_values), dtype=int).tolist()
        return {
            "unique_values": unique_values,
            "legend": {str(value): encodings[index] for index, value in enumerate(unique_values)},
        }

    def get_one_hot_meta(self, inputs_meta: Dict[str, Any], data_raw: List[Row], xs_or_ys: str) -> Dict[str, Any]:
        """Attach one-hot legends to every categorical column."""
        meta = {key: dict(value) for key, value in inputs_meta.items()}

        for key, column_meta in meta.items():
            if column_meta["dtype"] in CATEGORICAL_DTYPES:
                unique_values = []
                for row in data_raw:
                    value = row[xs_or_ys][key]
                    if value not in unique_values:
                        unique_values.append(value)
                column_meta.update(self.create_one_hot_encodings(unique_values))

        return meta

    def apply_one_hot_encodings_to_data_raw(self, data_raw: Optional[List[Row]] = None, meta: Optional[Meta] = None) -> List[Row]:
        """Return a copy of the rows with categorical values replaced by one-hot vectors."""
        data_raw = self.data["raw"] if data_raw is None else data_raw
        meta = self.meta if meta is None else meta

        encoded = []
        for row in data_raw:
            xs = dict(row["xs"])
            ys = dict(row["ys"])
            for key, column_meta in meta["inputs"].items():
                if column_meta.get("legend"):
                    xs[key] = column_meta["legend"][str(row["xs"][key])]
            for key, column_meta in meta["outputs"].items():
                if column_meta.get("legend"):
                    ys[key] = column_meta["legend"][str(row["ys"][key])]
            encoded.append({"xs": xs, "ys": ys})

        return encoded

    def calculate_input_units_from_data(self, inputs_meta: Dict[str, Any], data_raw: List[Row], xs_or_ys: str = "xs") -> Union[int, List[int]]:
        """
        Count the units a set of columns occupies.

        Numbers take one unit, categorical values one per unique value.
        Image (object) columns give the image shape instead: the sample's
        own shape when it is 3-D, otherwise ``image_shape``.
        """
        units: Union[int, List[int]] = 0

        for key, column_meta in inputs_meta.items():
            dtype = column_meta["dtype"]
            if dtype == "number":
                units += 1
            elif dtype in CATEGORICAL_DTYPES:
                units += len(column_meta["unique_values"])
            elif dtype == "object":
                sample = np.asarray(data_raw[0][xs_or_ys][key]) if data_raw else None
                if sample is not None and sample.ndim == 3:
                    return list(sample.shape)
                return list(self.image_shape)

        return units

    def get_dtypes_from_data(self, data_raw: List[Row]) -> Meta:
        """Describe column dtypes from the first row."""
        if not data_raw:
            raise ValueError("There is no data: add data or load a dataset first")

        sample = data_raw[0]
        meta = dict(self.meta)
        meta["inputs"] = {key: {"dtype": dtype_of(value)} for key, value in sample["xs"].items()}
        meta["outputs"] = {key: {"dtype": dtype_of(value)} for key, value in sample["ys"].items()}
        return meta

    def create_metadata_from_data(self, data_raw: Optional[List[Row]] = None) -> Meta:
        data_raw = self.data["raw"] if data_raw is None else data_raw

        meta = self.get_dtypes_from_data(data_raw)
        meta["inputs"] = self.get_one_hot_meta(meta["inputs"], data_raw, "xs")
        meta["outputs"] = self.get_one_hot_meta(meta["outputs"], data_raw, "ys")
        meta["input_units"] = self.calculate_input_units_from_data(meta["inputs"], data_raw, "xs")
        meta["output_units"] = self.calculate_input_units_from_data(meta["outputs"], data_raw, "ys")

        self.meta = meta
        return meta

    # ------------------------------------------------------------------
    # Tensors
    # ------------------------------------------------------------------

    def _stack_rows(self, data_raw: List[Row], meta: Meta):
        inputs, outputs = [], []
        for row in data_raw:
            inputs.append([v for key in meta["inputs"] for v in _flatten(row["xs"][key])])
            outputs.append([v for key in meta["outputs"] for v in _flatten(row["ys"][key])])

        try:
            return np.asarray(inputs, dtype=np.float32), np.asarray(outputs, dtype=np.float32)
        except ValueError as e:
            raise ValueError(f"Rows cannot be stacked into tensors, check for missing or non-numeric values: {e}") from e

    def convert_raw_to_tensors(self, data_raw: Optional[List[Row]] = None, meta: Optional[Meta] = None) -> Dict[str, torch.Tensor]:
        """
        Stack encoded rows into tensors.

        Returns:
            {"inputs": (N, input_units), "outputs": (N, output_units)}
        """
        data_raw = self.data["raw"] if data_raw is None else data_raw
        meta = self.meta if meta is None else meta

        inputs, outputs = self._stack_rows(data_raw, meta)
        if inputs.shape[1:] != (meta["input_units"],) or outputs.shape[1:] != (meta["output_units"],):
            raise ValueError(
                f"Rows have {inputs.shape[1:]} inputs and {outputs.shape[1:]} outputs, "
                f"metadata expects {meta['input_units']} and {meta['output_units']}"
            )

        return {"inputs": torch.from_numpy(inputs), "outputs": torch.from_numpy(outputs)}

    def convert_image_data_to_tensors(self, data_raw: Optional[List[Row]] = None, meta: Optional[Meta] = None) -> Dict[str, torch.Tensor]:
        """
        Stack encoded image rows into tensors.

        Returns:
            {"inputs": (N, height, width, channels), "outputs": (N, output_units)}
        """
        data_raw = self.data["raw"] if data_raw is None else data_raw
        meta = self.meta if meta is None else meta

        inputs, outputs = self._stack_rows(data_raw, meta)
        shape = [len(data_raw)] + list(meta["input_units"])
        if inputs.size != int(np.prod(shape)):
            raise ValueError(f"Image rows have {inputs.shape[1]} values each, expected shape {meta['input_units']}")

        return {
            "inputs": torch.from_numpy(inputs.reshape(shape)),
            "outputs": torch.from_numpy(outputs.reshape(len(data_raw), meta["output_units"])),
        }

    # ------------------------------------------------------------------
    # Loading
    # ------------------------------------------------------------------

    def load_csv(self, path_or_url: Union[str, Path], input_labels: List[str], output_labels: List[str]) -> List[Row]:
        """Load rows from a CSV file or URL; numeric fields become floats."""
        return self.load_json(self.csv_to_json(io.read_text(path_or_url)), input_labels, output_labels)

    def load_json(self, path_or_json: Union[str, Path, Dict, List], input_labels: List[str], output_labels: List[str]) -> List[Row]:
        """Load rows from a JSON file, URL or an already parsed object."""
        if isinstance(path_or_json, (dict, list)):
            data = path_or_json
        else:
            data = io.load_json(path_or_json)
        return self.format_raw_data(data, input_labels, output_labels)

    def load_blob(self, path_or_url: Union[str, Path], input_labels: List[str], output_labels: List[str]) -> List[Row]:
        """Load rows from a file whose content may be JSON or CSV."""
        text = io.read_text(path_or_url)
        if self.is_json_string(text):
            return self.load_json(json.loads(text), input_labels, output_labels)
        return self.load_json(self.csv_to_json(text), input_labels, output_labels)

    @staticmethod
    def csv_to_json(csv_text: str) -> Dict[str, List[Dict[str, Any]]]:
        """Parse CSV text (with a header row) into ``{"entries": [row, ...]}``."""
        reader = csv.DictReader(_io.StringIO(csv_text.strip()))
        entries = []
        for row in reader:
            entries.append({
                key.strip(): _coerce(value.strip()) if isinstance(value, str) else value
                for key, value in row.items()
                if key is not None
            })
        return {"entries": entries}

    def format_raw_data(self, data: Any, input_labels: List[str], output_labels: List[str]) -> List[Row]:
        """
        Turn the records found in ``data`` into xs/ys rows and store them.

        Records missing one of the labels are skipped with a warning.
        """
        records = self.find_entries(data)
        if not records:
            logger.warning("Your data must be contained in an array in a property called 'entries' or 'data'")

        rows: List[Row] = []
        for index, record in enumerate(records):
            missing = [label for label in list(input_labels) + list(output_labels) if label not in record]
            if missing:
                logger.warning(f"Skipping row {index}: labels {missing} do not exist")
                continue
            rows.append({
                "xs": {label: record[label] for label in input_labels},
                "ys": {label: record[label] for label in output_labels},
            })

        self.data["raw"] = rows
        logger.info(f"Loaded {len(rows)} rows")
        return rows

    def find_entries(self, data: Any) -> List[Any]:
        """Recursively find the first list stored under an "entries" or "data" key."""
        if isinstance(data, list):
            return data
        if not isinstance(data, dict):
            return []

        for key in ("entries", "data"):
            if isinstance(data.get(key), list):
                return data[key]

        for value in data.values():
            if isinstance(value, dict):
                found = self.find_entries(value)
                if found:
                    return found
        return []

    @staticmethod
    def is_json_string(text: str) -> bool:
        try:
            json.loads(text)
        except ValueError:
            return False
        return True

    def load_data(self, files_or_path: Union[str, Path, List], callback: Optional[Callback] = None) -> List[Row]:
        """
        Load rows saved by :meth:`save_data` (a JSON with a "data" or "entries" array).

        Args:
            files_or_path: Path or URL, or a list of paths (the first ``.json`` is used)
            callback: Callback receiving (error, rows)
        """
        return call_callback(self._load_data_internal, callback, files_or_path)

    def _load_data_internal(self, files_or_path) -> List[Row]:
        if isinstance(files_or_path, (list, tuple)):
            source = next((str(f) for f in files_or_path if str(f).endswith(".json")), None)
            if source is None:
                raise ValueError('Data must be a .json file containing an array called "data" or "entries"')
        else:
            source = files_or_path

        text = io.read_text(source)
        if not self.is_json_string(text):
            raise ValueError(f"{source} is not JSON; only data saved with save_data() can be loaded")

        rows = self.find_entries(json.loads(text))
        if not rows:
            logger.warning('Data must be a JSON object containing an array called "data"')

        self.data["raw"] = rows
        return rows

    # ------------------------------------------------------------------
    # Adding data
    # ------------------------------------------------------------------

    def add_data(self, x_inputs: Any, y_inputs: Any, options: Optional[Dict[str, Any]] = None) -> None:
        """
        Add one row.

        ``nnd.add_data([255, 0, 0], ["red-ish"], {"input_labels": ["r", "g", "b"], "output_labels": ["label"]})``

        Without labels, inputs are named input_0, input_1, ... and outputs
        output_0, ... Dicts are stored as given.
        """
        if options:
            input_labels = options.get("input_labels")
            output_labels = options.get("output_labels")
        else:
            input_labels = self.create_labels_from_array_values(x_inputs, "input")
            output_labels = self.create_labels_from_array_values(y_inputs, "output")

        self.data["raw"].append({
            "xs": self.format_incoming_data(x_inputs, input_labels),
            "ys": self.format_incoming_data(y_inputs, output_labels),
        })

    def add_image_data(self, x_inputs: Any, y_inputs: Any, options: Optional[Dict[str, Any]] = None) -> None:
        """Add one image row; the pixels are stored under the "image" input."""
        if options:
            output_labels = options.get("output_labels")
        else:
            output_labels = self.create_labels_from_array_values(y_inputs, "output")

        if isinstance(x_inputs, torch.Tensor):
            x_inputs = x_inputs.detach().cpu().numpy()

        self.data["raw"].append({
            "xs": {"image": x_inputs},
            "ys": self.format_incoming_data(y_inputs, output_labels),
        })

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def save_data(self, name: Optional[str] = None, output_dir: Union[str, Path] = ".") -> Path:
        """Save the raw rows as ``<name>.json`` (default name: current date and time)."""
        data_name = name or datetime.now().strftime("%Y-%m-%d_%H-%M-%S")
        return io.save_json({"data": self.data["raw"]}, Path(output_dir) / f"{data_name}.json")

    def save_meta(self, name_or_callback: Union[str, Callback, None] = None, callback: Optional[Callback] = None, output_dir: Union[str, Path] = ".") -> Path:
        """Save the metadata as ``<name>_meta.json`` (default name: "model")."""
        if is_callback(name_or_callback):
            model_name, callback = "model", name_or_callback
        else:
            model_name = name_or_callback or "model"

        return call_callback(io.save_json, callback, self.meta, Path(output_dir) / f"{model_name}_meta.json")

    def load_meta(self, files_or_path: Union[str, Path, Dict[str, Any], List], callback: Optional[Callback] = None) -> Meta:
        """
        Load metadata saved by :meth:`save_meta`.

        Args:
            files_or_path: Path or URL of the model ``.json`` (``<name>_meta.json``
                next to it is read), a dict with a "metadata" entry, or a list
                of file paths containing the ``_meta.json``
            callback: Callback receiving (error, meta)
        """
        return call_callback(self._load_meta_internal, callback, files_or_path)

    def _load_meta_internal(self, files_or_path) -> Meta:
        if isinstance(files_or_path, dict):
            source = files_or_path.get("metadata")
        elif isinstance(files_or_path, (list, tuple)):
            source = next((str(f) for f in files_or_path if str(f).endswith("_meta.json")), None)
        else:
            source = self._meta_path_for(str(files_or_path))

        if source is None:
            raise ValueError("No metadata (_meta.json) file given")

        self.meta = io.load_json(source)
        self.is_metadata_ready = True
        self.is_warmed_up = True
        return self.meta

    @staticmethod
    def _meta_path_for(model_path: str) -> str:
        if model_path.endswith("_meta.json"):
            return model_path
        if model_path.endswith(".json"):
            return model_path[: -len(".json")] + "_meta.json"
        return model_path.rstrip("/") + "/model_meta.json"

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @staticmethod
    def create_labels_from_array_values(incoming: Any, prefix: str) -> Optional[List[str]]:
        if isinstance(incoming, (list, tuple, np.ndarray)):
            return [f"{prefix}_{index}" for index in range(len(incoming))]
        return None

    @staticmethod
    def format_incoming_data(incoming: Any, labels: Optional[Sequence[str]]) -> Dict[str, Any]:
        """
        Key a list of values by their labels; dicts are returned as is.

        Raises:
            ValueError: If the input is neither a list nor a dict, or the
                labels do not match the values
        """
        if isinstance(incoming, dict):
            return dict(incoming)

        if isinstance(incoming, (list, tuple, np.ndarray)):
            if labels is None or len(labels) != len(incoming):
                raise ValueError(f"Got {len(incoming)} values but labels {labels}")
            return {label: incoming[index] for index, label in enumerate(labels)}

        raise ValueError("Input provided is not supported or does not match your output label specifications")

    @staticmethod
    def get_min(values: Sequence[float]) -> float:
        return min(values)

    @staticmethod
    def get_max(values: Sequence[float]) -> float:
        return max(values)

    @staticmethod
    def array_from_label(data_raw: List[Row], xs_or_ys: str, label: str) -> List[Any]:
        return [row[xs_or_ys][label] for row in data_raw]

    @staticmethod
    def zip_arrays(first: List[Dict[str, Any]], second: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        """Merge two equally long lists of dicts item by item."""
        if len(first) != len(second):
            raise ValueError(f"Arrays do not have the same length ({len(first)} != {len(second)})")
        return [{**a, **b} for a, b in zip(first, second)]
