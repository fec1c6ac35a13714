"""
Identifier generation for donations and processor requests.

All identifiers are prefix + millisecond timestamp + random digits. They are
collision resistant, not collision free: the unique constraints on the
donations table remain the final arbiter.
"""
import secrets
import time


def _timestamped(prefix: str, random_digits: int) -> str:
    millis = int(time.time() * 1000)
    suffix = str(secrets.randbelow(10 ** random_digits)).zfill(random_digits)
    return f"{prefix}{millis}{suffix}"


def generate_donation_ref(prefix: str = "DON") -> str:
    return _timestamped(prefix, 4)


def generate_order_id(prefix: str = "ORD") -> str:
    return _timestamped(prefix, 4)


def generate_request_id() -> str:
    """Nonce sent with every payment-link request"""
    return _timestamped("REQ", 5)
