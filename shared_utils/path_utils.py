"""
Path utilities for the productivity gap pipeline.

Directory creation, input checks and atomic replacement of output files.
"""

import os
import tempfile
from contextlib import contextmanager
from pathlib import Path
from typing import Union


def ensure_directory(path: Union[str, Path]) -> Path:
    """Create a directory and its parents if needed, returning it as a Path."""
    path = Path(path)
    path.mkdir(parents=True, exist_ok=True)
    return path


def validate_file_exists(path: Union[str, Path], description: str = "") -> Path:
    """
    Validate that file exists and return Path object.
    
    Args:
        path: File path to validate
        description: Description for error messages
        
    Returns:
        Path: Validated file path
        
    Raises:
        FileNotFoundError: If file doesn't exist
    """
    path = Path(path)
    desc = f" ({description})" if description else ""
    
    if not path.exists():
        raise FileNotFoundError(f"File not found{desc}: {path}")
    
    if not path.is_file():
        raise ValueError(f"Path is not a file{desc}: {path}")
    
    return path


@contextmanager
def atomic_output_path(output_path: Union[str, Path]):
    """
    Yield a temporary sibling path that replaces output_path on success.
    
    The temporary file is removed if the body raises, so output_path only
    ever holds a completely written file.
    
    Args:
        output_path: Final destination of the file
        
    Yields:
        Path: Temporary path to write to
    """
    output_path = Path(output_path)
    output_path.parent.mkdir(parents=True, exist_ok=True)
    
    fd, tmp_name = tempfile.mkstemp(
        prefix=f".{output_path.stem}_", suffix=output_path.suffix, dir=output_path.parent
    )
    os.close(fd)
    tmp_path = Path(tmp_name)
    
    try:
        yield tmp_path
        os.replace(tmp_path, output_path)
    finally:
        if tmp_path.exists():
            tmp_path.unlink()
