from .address_guard import AddressGuard, Classification, is_blocked_address
from .target import Target, TargetValidator, parse_target

__all__ = [
    "AddressGuard",
    "Classification",
    "is_blocked_address",
    "Target",
    "TargetValidator",
    "parse_target",
]
