"""Constructors and validators for the records stored in the chat forest.

All records are plain JSON-able dicts, so that they can be saved as-is.

The record formats are::

    root:    {"id": str,
              "config": {"model": str,
                         "system_prompt": Optional[str],
                         "parameters": {"max_tokens": int,
                                        "temperature": float,
                                        "extra": {str: scalar, ...}}},
              "created_at": int}                   # as nanoseconds since epoch

    node:    {"id": str,
              "root_id": str,                      # the conversation this node belongs to
              "parent_id": Optional[str],          # `None` for a root-level node
              "message": {"role": "user" | "assistant",
                          "content": str,
                          "timestamp": int},       # as nanoseconds since epoch
              "child_ids": List[str],              # creation order
              "metadata": {"tags": List[str],      # unique, insertion order
                           ...}}                   # optional fields, see `metadata_fields`

The validators raise `ValidationError` on malformed input, and otherwise return a normalized copy.
"""

__all__ = ["roles", "metadata_fields",
           "create_chat_message", "validate_message",
           "create_metadata", "validate_metadata",
           "create_model_parameters", "validate_model_parameters",
           "create_root_config", "validate_root_config",
           "validate_node_record", "validate_root_record"]

import copy
import math
import time
from typing import Any, Dict, Iterable, Optional

from unpythonic import uniqify

from . import config
from .errors import ValidationError

roles = ("user", "assistant")

def _is_str(x):
    return isinstance(x, str)

def _is_usage(x):
    return (isinstance(x, dict) and
            set(x.keys()) <= {"input_tokens", "output_tokens"} and
            all(isinstance(v, int) and not isinstance(v, bool) and v >= 0 for v in x.values()))

# name -> validator; "tags" is always present, the rest are optional.
metadata_fields = {"label": _is_str,  # human-readable name for the branch, set by the user
                   "usage": _is_usage,  # token counts reported by the model provider
                   "finish_reason": _is_str}  # why the model stopped generating

_scalar_types = (str, int, float, bool, type(None))

def _is_int(x) -> bool:
    return isinstance(x, int) and not isinstance(x, bool)

# --------------------------------------------------------------------------------
# Messages

def create_chat_message(role: str, content: str, timestamp: Optional[int] = None) -> Dict:
    """Create a new chat message.

    `role`: "user" or "assistant".
    `content`: The text content of the message.
    `timestamp`: Nanoseconds since epoch, as returned by `time.time_ns()`.
                 If `None`, stamp the current time.

    Returns the new message: `{"role": ..., "content": ..., "timestamp": ...}`.
    """
    if timestamp is None:
        timestamp = time.time_ns()
    return validate_message({"role": role,
                             "content": content,
                             "timestamp": timestamp})

def validate_message(message: Any) -> Dict:
    """Check that `message` is a well-formed chat message. Return a copy."""
    if not isinstance(message, dict):
        raise ValidationError(f"validate_message: expected a dict, got {type(message)}")
    if set(message.keys()) != {"role", "content", "timestamp"}:
        raise ValidationError(f"validate_message: expected exactly the keys ['content', 'role', 'timestamp'], got {sorted(message.keys())}")
    if message["role"] not in roles:
        raise ValidationError(f"validate_message: unknown role '{message['role']}'; valid: one of {roles}.")
    if not isinstance(message["content"], str):
        raise ValidationError(f"validate_message: content must be a str, got {type(message['content'])}")
    if not _is_int(message["timestamp"]) or message["timestamp"] < 0:
        raise ValidationError(f"validate_message: timestamp must be a nonnegative int (nanoseconds since epoch), got {message['timestamp']!r}")
    return dict(message)

# --------------------------------------------------------------------------------
# Metadata

def create_metadata(tags: Optional[Iterable[str]] = None, **fields: Any) -> Dict:
    """Create node metadata with the given `tags` and optional `fields` (see `metadata_fields`)."""
    if isinstance(tags, str):  # would otherwise become a list of characters
        raise ValidationError(f"create_metadata: tags must be a collection of str, got a single str '{tags}'")
    metadata = {"tags": list(tags) if tags is not None else []}
    metadata.update(fields)
    return validate_metadata(metadata)

def validate_metadata(metadata: Any) -> Dict:
    """Check that `metadata` uses only known fields, with valid values.

    Duplicate tags are dropped (the first occurrence wins), so tags behave as an ordered set.
    A missing "tags" field is filled in as empty.

    Returns the normalized copy.
    """
    if not isinstance(metadata, dict):
        raise ValidationError(f"validate_metadata: expected a dict, got {type(metadata)}")
    unknown = set(metadata.keys()) - {"tags"} - set(metadata_fields.keys())
    if unknown:
        raise ValidationError(f"validate_metadata: unknown metadata field(s) {sorted(unknown)}; valid: 'tags', {sorted(metadata_fields.keys())}")
    tags = metadata.get("tags", [])
    if isinstance(tags, str) or not isinstance(tags, (list, tuple, set, frozenset)):
        raise ValidationError(f"validate_metadata: tags must be a collection of str, got {type(tags)}")
    if not all(isinstance(tag, str) and tag for tag in tags):
        raise ValidationError(f"validate_metadata: each tag must be a nonempty str, got {list(tags)}")
    if isinstance(tags, (set, frozenset)):
        tags = sorted(tags)  # no natural order; make it deterministic
    out = {"tags": list(uniqify(tags))}
    for name, is_valid in metadata_fields.items():
        if name in metadata:
            if not is_valid(metadata[name]):
                raise ValidationError(f"validate_metadata: invalid value for field '{name}': {metadata[name]!r}")
            out[name] = copy.deepcopy(metadata[name])
    return out

# --------------------------------------------------------------------------------
# Conversation (root) configuration

def create_model_parameters(max_tokens: Optional[int] = None,
                            temperature: Optional[float] = None,
                            **extra: Any) -> Dict:
    """Create model call parameters.

    `max_tokens`, `temperature`: If `None`, use the defaults from `loom.forest.config`.
    `extra`: Any provider-specific options. Values must be JSON scalars.
    """
    return validate_model_parameters({"max_tokens": max_tokens if max_tokens is not None else config.default_max_tokens,
                                      "temperature": temperature if temperature is not None else config.default_temperature,
                                      "extra": extra})

def validate_model_parameters(parameters: Any) -> Dict:
    """Check model call parameters. Missing recognized options get their defaults. Return the normalized copy."""
    if not isinstance(parameters, dict):
        raise ValidationError(f"validate_model_parameters: expected a dict, got {type(parameters)}")
    unknown = set(parameters.keys()) - {"max_tokens", "temperature", "extra"}
    if unknown:
        raise ValidationError(f"validate_model_parameters: unknown parameter(s) {sorted(unknown)}; put provider-specific options into 'extra'.")

    max_tokens = parameters.get("max_tokens", config.default_max_tokens)
    if not _is_int(max_tokens) or max_tokens <= 0:
        raise ValidationError(f"validate_model_parameters: max_tokens must be a positive int, got {max_tokens!r}")

    temperature = parameters.get("temperature", config.default_temperature)
    if isinstance(temperature, bool) or not isinstance(temperature, (int, float)) or not math.isfinite(temperature) or not (0.0 <= temperature <= 2.0):
        raise ValidationError(f"validate_model_parameters: temperature must be a number in [0, 2], got {temperature!r}")

    extra = parameters.get("extra", {})
    if not isinstance(extra, dict):
        raise ValidationError(f"validate_model_parameters: extra must be a dict, got {type(extra)}")
    if len(extra) > config.max_extra_parameters:
        raise ValidationError(f"validate_model_parameters: at most {config.max_extra_parameters} extra parameters allowed, got {len(extra)}")
    for key, value in extra.items():
        if not isinstance(key, str):
            raise ValidationError(f"validate_model_parameters: extra parameter names must be str, got {key!r}")
        if not isinstance(value, _scalar_types):
            raise ValidationError(f"validate_model_parameters: extra parameter '{key}' must be a JSON scalar, got {type(value)}")
        if isinstance(value, float) and not math.isfinite(value):  # NaN and infinities are not valid JSON
            raise ValidationError(f"validate_model_parameters: extra parameter '{key}' must be finite, got {value!r}")

    return {"max_tokens": max_tokens,
            "temperature": float(temperature),
            "extra": dict(extra)}

def create_root_config(model: str,
                       system_prompt: Optional[str] = None,
                       parameters: Optional[Dict] = None) -> Dict:
    """Create the configuration of a new conversation."""
    return validate_root_config({"model": model,
                                 "system_prompt": system_prompt,
                                 "parameters": parameters if parameters is not None else create_model_parameters()})

def validate_root_config(root_config: Any) -> Dict:
    """Check a conversation configuration. Return the normalized copy."""
    if not isinstance(root_config, dict):
        raise ValidationError(f"validate_root_config: expected a dict, got {type(root_config)}")
    unknown = set(root_config.keys()) - {"model", "system_prompt", "parameters"}
    if unknown:
        raise ValidationError(f"validate_root_config: unknown field(s) {sorted(unknown)}")
    model = root_config.get("model")
    if not isinstance(model, str) or not model:
        raise ValidationError(f"validate_root_config: model must be a nonempty str, got {model!r}")
    system_prompt = root_config.get("system_prompt")
    if system_prompt is not None and not isinstance(system_prompt, str):
        raise ValidationError(f"validate_root_config: system_prompt must be a str or None, got {type(system_prompt)}")
    return {"model": model,
            "system_prompt": system_prompt,
            "parameters": validate_model_parameters(root_config.get("parameters", {}))}

# --------------------------------------------------------------------------------
# Whole records, as loaded from disk

def validate_node_record(record: Any) -> Dict:
    """Check the structure of a node record loaded from disk. Links are not checked here."""
    if not isinstance(record, dict):
        raise ValidationError(f"validate_node_record: expected a dict, got {type(record)}")
    expected = {"id", "root_id", "parent_id", "message", "child_ids", "metadata"}
    if set(record.keys()) != expected:
        raise ValidationError(f"validate_node_record: expected keys {sorted(expected)}, got {sorted(record.keys())}")
    if not isinstance(record["id"], str) or not isinstance(record["root_id"], str):
        raise ValidationError("validate_node_record: 'id' and 'root_id' must be str")
    if record["parent_id"] is not None and not isinstance(record["parent_id"], str):
        raise ValidationError(f"validate_node_record: 'parent_id' must be a str or None, got {record['parent_id']!r}")
    child_ids = record["child_ids"]
    if not isinstance(child_ids, list) or not all(isinstance(x, str) for x in child_ids):
        raise ValidationError("validate_node_record: 'child_ids' must be a list of str")
    return {"id": record["id"],
            "root_id": record["root_id"],
            "parent_id": record["parent_id"],
            "message": validate_message(record["message"]),
            "child_ids": list(child_ids),
            "metadata": validate_metadata(record["metadata"])}

def validate_root_record(record: Any) -> Dict:
    """Check the structure of a root record loaded from disk."""
    if not isinstance(record, dict):
        raise ValidationError(f"validate_root_record: expected a dict, got {type(record)}")
    if set(record.keys()) != {"id", "config", "created_at"}:
        raise ValidationError(f"validate_root_record: expected keys ['config', 'created_at', 'id'], got {sorted(record.keys())}")
    if not isinstance(record["id"], str):
        raise ValidationError("validate_root_record: 'id' must be a str")
    if not _is_int(record["created_at"]):
        raise ValidationError("validate_root_record: 'created_at' must be an int (nanoseconds since epoch)")
    return {"id": record["id"],
            "config": validate_root_config(record["config"]),
            "created_at": record["created_at"]}
