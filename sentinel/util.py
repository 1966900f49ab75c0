import math
import re
from collections import Counter

ENTROPY_SAMPLE_BYTES = 1024 * 1024


def shannon_entropy(data: bytes) -> float:
    """Shannon entropy of a byte string in bits per byte (0.0 - 8.0)."""
    if not data:
        return 0.0
    total = len(data)
    entropy = 0.0
    for count in Counter(data).values():
        p = count / total
        entropy -= p * math.log2(p)
    return entropy


def file_entropy(file_path, limit=ENTROPY_SAMPLE_BYTES):
    try:
        with open(file_path, "rb") as file:
            sample = file.read(limit)
        return shannon_entropy(sample)
    except OSError:
        return 0.0


def basename(path: str) -> str:
    """Last segment of a Windows or POSIX style path."""
    segments = [s for s in re.split(r"[\\/]", path.strip()) if s]
    return segments[-1] if segments else path.strip()
