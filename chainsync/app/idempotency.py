import random
import secrets
import string
import time
import uuid


def _now_ms() -> int:
    return int(time.time() * 1000)


def _random_hex(nbytes: int = 16) -> str:
    try:
        return secrets.token_hex(nbytes)
    except NotImplementedError:
        # No OS entropy source; good enough for local ids, never for keys alone.
        return "%0*x" % (nbytes * 2, random.getrandbits(nbytes * 8))


def generate_idempotency_key() -> str:
    """
    One key per logical sale attempt.

    Callers generate it once, when the cashier commits, and reuse it for every
    retry of that sale. A new key for the same sale defeats server-side dedupe.
    """
    try:
        return str(uuid.UUID(bytes=secrets.token_bytes(16), version=4))
    except NotImplementedError:
        return f"idemp_{_now_ms()}_{_random_hex()}"


def generate_local_id() -> str:
    return f"local_{_now_ms()}_{_random_hex(8)}"


def generate_receipt_number() -> str:
    alphabet = string.ascii_uppercase + string.digits
    suffix = "".join(secrets.choice(alphabet) for _ in range(6))
    return f"RCP-{_now_ms()}-{suffix}"
