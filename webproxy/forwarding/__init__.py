from .engine import ForwardingEngine, UpstreamResponse, redirect_method

__all__ = ["ForwardingEngine", "UpstreamResponse", "redirect_method"]
