"""nurl - terminal API client with variables and request chaining."""

from nurl.chain import ChainResult, ChainRunner, ChainStep, run_chain
from nurl.filters import extract_by_path
from nurl.variables import interpolate_string, interpolate_structure, resolve_scope

__all__ = [
    "ChainResult",
    "ChainRunner",
    "ChainStep",
    "extract_by_path",
    "interpolate_string",
    "interpolate_structure",
    "resolve_scope",
    "run_chain",
]

__version__ = "0.1.0"
