import hashlib
import re
from typing import Tuple, Union

from schemas import Fingerprint

_CHUNK = 1024 * 1024
_HEX = re.compile(r"^[A-Fa-f0-9]+$")


def fingerprint_file(path: str) -> Fingerprint:
    """MD5 + SHA-256 of a file, read once in chunks."""
    md5 = hashlib.md5(usedforsecurity=False)
    sha256 = hashlib.sha256()
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(_CHUNK), b""):
            md5.update(chunk)
            sha256.update(chunk)
    return Fingerprint(md5=md5.hexdigest(), sha256=sha256.hexdigest())


def fingerprint_bytes(data: bytes) -> Fingerprint:
    return Fingerprint(
        md5=hashlib.md5(data, usedforsecurity=False).hexdigest(),
        sha256=hashlib.sha256(data).hexdigest(),
    )


def classify_digest(value: str) -> str:
    v = value.strip()
    if not _HEX.match(v):
        return "unknown"
    return {32: "md5", 40: "sha1", 64: "sha256"}.get(len(v), "unknown")


def parse_fingerprint(value: Union[str, Tuple[str, str], Fingerprint]) -> Fingerprint:
    """Accept a Fingerprint, an (md5, sha256) pair or "md5:sha256"."""
    if isinstance(value, Fingerprint):
        return value
    if isinstance(value, tuple):
        md5, sha256 = value
        return Fingerprint(md5=md5, sha256=sha256)
    parts = [p for p in re.split(r"[:,\s]+", value.strip()) if p]
    by_kind = {classify_digest(p): p for p in parts}
    if "md5" not in by_kind or "sha256" not in by_kind:
        raise ValueError(f"expected an md5 and a sha256 digest, got {value!r}")
    return Fingerprint(md5=by_kind["md5"], sha256=by_kind["sha256"])
