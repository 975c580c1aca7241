"""Helpers shared by the test modules."""
from pathlib import Path


def make_blob(data_dir: Path, rel_path: str, data: bytes = b"\x89PNG fake") -> Path:
    """Place a blob under files/ as if a previous save had stored it."""
    path = Path(data_dir) / "files" / rel_path
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(data)
    return path


def img(rel_path: str) -> str:
    """Note HTML embedding one file from the files/ tree."""
    return f"<p>see <img src='files/{rel_path}'></p>"
