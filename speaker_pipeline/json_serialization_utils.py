#!/usr/bin/env python3
"""
json_serialization_utils.py - JSON output for pipeline results

Pipeline results carry numpy scalars and arrays (embeddings, energies,
distances), enum labels and timestamps. This module turns them into plain
JSON types:
- numpy.floating / numpy.integer / numpy.bool_ -> float / int / bool
- numpy.ndarray -> list
- objects with to_dict() (results, profiles, configs) -> dict
- Enum -> its value, datetime -> ISO 8601
- NaN -> null, +/-Infinity -> +/-max float (with a RuntimeWarning)

Usage:
    from speaker_pipeline.json_serialization_utils import safe_json_dumps

    json_str = safe_json_dumps(result)
"""

import json
import math
import sys
import warnings
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Union

import numpy as np


def _handle_special_float(value: float, warn: bool = True) -> Union[float, None]:
    """NaN -> None, +/-inf -> +/-sys.float_info.max, finite values unchanged."""
    if math.isfinite(value):
        return value

    if math.isnan(value):
        label, replacement = "NaN", None
    else:
        label, replacement = ("Infinity" if value > 0 else "-Infinity"), math.copysign(sys.float_info.max, value)
    if warn:
        warnings.warn(f"{label} in pipeline output replaced by {replacement}", RuntimeWarning, stacklevel=3)
    return replacement


def to_json_serializable(obj: Any, warn_special_floats: bool = True) -> Any:
    """
    Recursively convert pipeline values to JSON-serializable Python types.

    Examples:
        >>> to_json_serializable(np.float32(0.5))
        0.5

        >>> to_json_serializable({"energies": np.array([1, 2, 3])})
        {'energies': [1, 2, 3]}
    """
    if obj is None:
        return None

    # np.bool_ is not an np.integer, but Python bool is an int: order matters
    if isinstance(obj, np.bool_):
        return bool(obj)
    if isinstance(obj, np.floating):
        return _handle_special_float(float(obj), warn_special_floats)
    if isinstance(obj, np.integer):
        return int(obj)
    if isinstance(obj, np.ndarray):
        return [to_json_serializable(item, warn_special_floats) for item in obj.tolist()]

    if isinstance(obj, float):
        return _handle_special_float(obj, warn_special_floats)
    if isinstance(obj, (str, int, bool)):
        return obj

    if isinstance(obj, Enum):
        return to_json_serializable(obj.value, warn_special_floats)
    if isinstance(obj, datetime):
        return obj.isoformat()
    if hasattr(obj, "to_dict") and callable(obj.to_dict):
        return to_json_serializable(obj.to_dict(), warn_special_floats)

    if isinstance(obj, dict):
        return {
            str(key): to_json_serializable(value, warn_special_floats)
            for key, value in obj.items()
        }
    if isinstance(obj, (list, tuple, set)):
        return [to_json_serializable(item, warn_special_floats) for item in obj]

    return str(obj)


class NumpyJSONEncoder(json.JSONEncoder):
    """
    JSON encoder for numpy values and pipeline result objects.

    Usage:
        json.dumps(result, cls=NumpyJSONEncoder)
    """

    def __init__(self, *args, warn_special_floats: bool = True, **kwargs):
        super().__init__(*args, **kwargs)
        self.warn_special_floats = warn_special_floats

    def default(self, obj):
        if isinstance(obj, (np.generic, np.ndarray, Enum, datetime, set)) or hasattr(obj, "to_dict"):
            return to_json_serializable(obj, self.warn_special_floats)
        return super().default(obj)

    def encode(self, obj):
        # Floats never reach default(), so NaN/Infinity are replaced up front
        return super().encode(to_json_serializable(obj, self.warn_special_floats))


def safe_json_dumps(
    obj: Any,
    warn_special_floats: bool = True,
    ensure_ascii: bool = False,
    **kwargs
) -> str:
    """
    Serialize pipeline output to a JSON string.

    Raises:
        TypeError: If the object cannot be serialized even after conversion
    """
    try:
        encoder = NumpyJSONEncoder(
            warn_special_floats=warn_special_floats,
            ensure_ascii=ensure_ascii,
            **kwargs
        )
        return encoder.encode(obj)
    except (TypeError, ValueError) as e:
        raise TypeError(f"Failed to serialize object to JSON: {e}") from e


def safe_output_json(obj: Dict[str, Any], warn_special_floats: bool = False, stream=None) -> None:
    """
    Print one JSON document to stdout (or the given stream).

    Serialization failures are reported on stderr and replaced by an error
    marker object so a consumer always receives valid JSON.
    """
    stream = stream or sys.stdout
    try:
        document = safe_json_dumps(obj, warn_special_floats=warn_special_floats)
    except TypeError as e:
        print(f"[SpeakerPipeline] Could not serialize output: {e}", file=sys.stderr, flush=True)
        document = json.dumps({"error": True, "error_code": "SERIALIZATION_ERROR", "message": str(e)})
    print(document, file=stream, flush=True)
