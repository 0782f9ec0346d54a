from __future__ import annotations

import hashlib
import re
from pathlib import Path
from typing import Any, Tuple

from blake3 import blake3

from .errors import InvalidReference

_HEX_LEN = {"sha256": 64, "sha512": 128, "blake3": 64}
_RE_HEX = re.compile(r"^[0-9a-f]+$")

CHUNK_SIZE = 1 << 20


def parse_digest(raw: str) -> Tuple[str, str]:
    """Split `<algo>:<hex>` into its parts, lowercased and validated."""
    s = (raw or "").strip().lower()
    algo, sep, hx = s.partition(":")
    if not sep:
        raise InvalidReference(f"digest must be <algo>:<hex>: {raw!r}")
    want = _HEX_LEN.get(algo)
    if want is None:
        raise InvalidReference(f"unsupported digest algorithm: {algo!r}")
    if len(hx) != want or not _RE_HEX.match(hx):
        raise InvalidReference(f"invalid {algo} digest: {raw!r}")
    return algo, hx


def normalize_digest(raw: str) -> str:
    algo, hx = parse_digest(raw)
    return f"{algo}:{hx}"


def new_hasher(algo: str) -> Any:
    if algo == "blake3":
        return blake3()
    if algo in ("sha256", "sha512"):
        return hashlib.new(algo)
    raise InvalidReference(f"unsupported digest algorithm: {algo!r}")


def compute_digest(data: bytes, algo: str = "sha256") -> str:
    h = new_hasher(algo)
    h.update(data)
    return f"{algo}:{h.hexdigest()}"


def hash_file(path: Path, algo: str, chunk_size: int = CHUNK_SIZE) -> str:
    h = new_hasher(algo)
    with open(path, "rb") as f:
        while True:
            b = f.read(chunk_size)
            if not b:
                break
            h.update(b)
    return f"{algo}:{h.hexdigest()}"
