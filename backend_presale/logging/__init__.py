"""
Structured logging for Backend Presale.

JSON logs with timestamp, event_type and audit fields (recipient, amount, signature).
Use get_logger() in every module; never pass key material as a log field.
"""

from backend_presale.logging.logger import bind_request, get_logger, mask_rpc_url

__all__ = ["bind_request", "get_logger", "mask_rpc_url"]
