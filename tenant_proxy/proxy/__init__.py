from .route import forward_to_target, prepare_headers, target_url
from .websocket import bridge_websocket

__all__ = [
    "forward_to_target",
    "prepare_headers",
    "target_url",
    "bridge_websocket",
]
