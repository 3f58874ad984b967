"""
Identifier generation for captured orders.
"""
import secrets
import time


def generate_order_id() -> str:
    """Millisecond timestamp plus a random suffix, e.g. order_1718000000000_3f9a1c2b7d."""
    return f"order_{int(time.time() * 1000)}_{secrets.token_hex(5)}"


def generate_display_id() -> int:
    """Six-digit human-facing order number. Not guaranteed unique."""
    return 100000 + secrets.randbelow(900000)
