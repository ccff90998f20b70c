from .websocket_relay import WebSocketRelay, sendable_close_code

__all__ = ["WebSocketRelay", "sendable_close_code"]
