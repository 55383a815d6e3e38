"""
Body part colour palettes.

The default palette matches the label set of the default human parsing
model (``settings.BODYPIX_MODEL``). Other label sets get a palette built
from the model's ``id2label`` mapping.
"""
import re
from typing import Any, Dict, List, Mapping

import numpy as np

Palette = Dict[str, Dict[str, Any]]

BODYPIX_PALETTE: Palette = {
    "Hat": {"id": 1, "color": [110, 64, 170]},
    "Hair": {"id": 2, "color": [143, 61, 178]},
    "Sunglasses": {"id": 3, "color": [178, 60, 178]},
    "Upper-clothes": {"id": 4, "color": [210, 62, 167]},
    "Skirt": {"id": 5, "color": [238, 67, 149]},
    "Pants": {"id": 6, "color": [255, 78, 125]},
    "Dress": {"id": 7, "color": [255, 94, 99]},
    "Belt": {"id": 8, "color": [255, 115, 75]},
    "Left-shoe": {"id": 9, "color": [255, 140, 56]},
    "Right-shoe": {"id": 10, "color": [239, 167, 47]},
    "Face": {"id": 11, "color": [217, 194, 49]},
    "Left-leg": {"id": 12, "color": [194, 219, 64]},
    "Right-leg": {"id": 13, "color": [175, 240, 91]},
    "Left-arm": {"id": 14, "color": [135, 245, 87]},
    "Right-arm": {"id": 15, "color": [96, 247, 96]},
    "Bag": {"id": 16, "color": [64, 243, 115]},
    "Scarf": {"id": 17, "color": [40, 234, 141]},
}

_RGB_FUNCTION = re.compile(r"rgba?\(([^)]+)\)", re.IGNORECASE)


def color_to_rgb(color: Any) -> List[int]:
    """
    Normalise a colour to an ``[r, g, b]`` list.

    Accepts ``[r, g, b]`` / ``(r, g, b[, a])`` sequences, numpy arrays,
    ``"#rrggbb"`` / ``"#rgb"`` hex strings and ``"rgb(r, g, b)"`` strings.

    Raises:
        ValueError: If the colour cannot be parsed
    """
    if isinstance(color, str):
        value = color.strip()
        match = _RGB_FUNCTION.fullmatch(value)
        if match:
            parts = [p.strip() for p in match.group(1).split(",")]
            if len(parts) < 3:
                raise ValueError(f"Invalid colour string: {color!r}")
            return [int(round(float(p))) for p in parts[:3]]
        if value.startswith("#"):
            hex_digits = value[1:]
            if len(hex_digits) == 3:
                hex_digits = "".join(c * 2 for c in hex_digits)
            if len(hex_digits) == 6:
                try:
                    return [int(hex_digits[i:i + 2], 16) for i in (0, 2, 4)]
                except ValueError as e:
                    raise ValueError(f"Invalid colour string: {color!r}") from e
        raise ValueError(f"Invalid colour string: {color!r}")

    values = np.asarray(color).ravel()
    if values.size not in (3, 4):
        raise ValueError(f"Invalid colour: {color!r}, expected 3 or 4 components")
    return [int(v) for v in np.clip(np.rint(values[:3].astype(float)), 0, 255)]


def build_palette(id2label: Mapping[int, str], background_label: str = "Background") -> Palette:
    """
    Build a palette for an arbitrary segmentation label set.

    Labels present in :data:`BODYPIX_PALETTE` keep their colour; others get
    a deterministic colour seeded by their id.
    """
    palette: Palette = {}
    for label_id, label in sorted(id2label.items(), key=lambda item: int(item[0])):
        if label.lower() == background_label.lower():
            continue
        if label in BODYPIX_PALETTE:
            color = list(BODYPIX_PALETTE[label]["color"])
        else:
            rng = np.random.default_rng(int(label_id))
            color = [int(c) for c in rng.integers(0, 256, size=3)]
        palette[label] = {"id": int(label_id), "color": color}
    return palette
