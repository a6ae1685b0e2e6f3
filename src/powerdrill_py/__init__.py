"""powerdrill_py — Thin agentic wrapper around the Powerdrill API."""

from powerdrill_py.client import (
    PowerdrillAPIError,
    PowerdrillClient,
    PowerdrillConfig,
    connect,
)
from powerdrill_py._upload import UploadError, upload_file_as_data_source

__all__ = [
    "connect",
    "PowerdrillAPIError",
    "PowerdrillClient",
    "PowerdrillConfig",
    "UploadError",
    "upload_file_as_data_source",
]
