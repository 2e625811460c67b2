"""
Compositing pipeline package.

This package contains the components that turn finished scenes into one video:
- Composition plan (trim, transition, concatenate, encode as data)
- MoviePy rendering backend
- Asset management for the per-job workspace
- Retry controller around the compositor
- Error taxonomy shared by the whole service
"""

__version__ = "0.1.0"

from .asset_manager import AssetManager
from .error_handler import PipelineError, ErrorCode, is_retryable_error
from .retry import RetryController, RetryOptions

__all__ = [
    "AssetManager",
    "PipelineError",
    "ErrorCode",
    "is_retryable_error",
    "RetryController",
    "RetryOptions",
]
