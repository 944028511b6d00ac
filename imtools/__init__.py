"""
imtools
=======

A command-line tool that flattens, AI-sorts, converts and downloads images.
Every reorganization is planned first and then applied (or simulated with
--dry-run), one operation at a time.
"""

__version__ = "1.0.0"

from .scanner import scan_directory, Entry, IMAGE_EXTENSIONS
from .executor import apply_plan, ExecutionReport
from .pipeline import run_flatten, run_sort
from .utils import save_json

__all__ = [
    "scan_directory",
    "Entry",
    "IMAGE_EXTENSIONS",
    "apply_plan",
    "ExecutionReport",
    "run_flatten",
    "run_sort",
    "save_json",
]
