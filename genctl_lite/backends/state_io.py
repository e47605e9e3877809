"""
Versioned binary format for saved engine state.

Blobs are ``torch.save`` archives of a plain dict carrying a magic string and
a format version next to the payload. Reading uses ``weights_only=True`` so
only tensors and builtin containers are accepted.
"""

import io
import logging
import os
from typing import Any, Dict, List, Optional, Tuple

import torch

logger = logging.getLogger(__name__)

STATE_VERSION = 1
CONTEXT_MAGIC = "genctl-ctx"
SEQUENCE_MAGIC = "genctl-seq"
CONTEXT_FILE_MAGIC = "genctl-ctx-file"
SEQUENCE_FILE_MAGIC = "genctl-seq-file"


def dump_blob(magic: str, payload: Dict[str, Any]) -> bytes:
    buf = io.BytesIO()
    torch.save({"magic": magic, "version": STATE_VERSION, "payload": payload}, buf)
    return buf.getvalue()


def _check(obj: Any, magic: str) -> Optional[Dict[str, Any]]:
    if not isinstance(obj, dict) or obj.get("magic") != magic:
        logger.debug("state blob rejected: expected magic %r", magic)
        return None
    if obj.get("version") != STATE_VERSION:
        logger.debug("state blob rejected: version %r", obj.get("version"))
        return None
    return obj


def load_blob(data: bytes, magic: str) -> Optional[Dict[str, Any]]:
    """Parse a blob written by ``dump_blob``; None if it is not one."""
    try:
        obj = torch.load(io.BytesIO(data), weights_only=True)
    except Exception as e:
        logger.debug("state blob unreadable: %s", e)
        return None
    obj = _check(obj, magic)
    return None if obj is None else obj["payload"]


def save_file(path: str, magic: str, tokens: List[int], payload: Dict[str, Any]) -> int:
    """Write a state file with its originating tokens; returns bytes written."""
    record = {
        "magic": magic,
        "version": STATE_VERSION,
        "tokens": torch.tensor(list(tokens), dtype=torch.int32),
        "payload": payload,
    }
    torch.save(record, path)
    return os.path.getsize(path)


def load_file(path: str, magic: str) -> Optional[Tuple[List[int], Dict[str, Any], int]]:
    """Read a state file; returns (tokens, payload, bytes read) or None."""
    try:
        obj = torch.load(path, weights_only=True)
    except Exception as e:
        logger.debug("state file %s unreadable: %s", path, e)
        return None
    obj = _check(obj, magic)
    if obj is None:
        return None
    return obj["tokens"].tolist(), obj["payload"], os.path.getsize(path)
