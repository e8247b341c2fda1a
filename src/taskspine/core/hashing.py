"""
Keyed signatures for continuation callbacks.

A task that suspends may store a ``secret`` in its context.  The external
system that later resumes it must sign the raw result payload with that
secret; the resolver recomputes the signature and rejects mismatches.

The canonical signed string joins the task id and the raw payload with
``'|'``.

Examples:
    >>> sig = sign_continuation("s1", "42", '{"code":0}')
    >>> verify_continuation("s1", "42", '{"code":0}', sig)
    True
    >>> verify_continuation("s1", "43", '{"code":0}', sig)
    False

Tags:
    hashing, hmac, continuation, task-spine

Doc-Types:
    api-reference
"""

import hashlib
import hmac


def canonical_continuation(task_id: str, payload: str) -> str:
    """The string covered by a continuation signature."""
    return f"{task_id}|{payload}"


def sign_continuation(secret: str, task_id: str, payload: str) -> str:
    """HMAC-SHA256 (hex) of ``"<task_id>|<payload>"`` keyed by *secret*."""
    message = canonical_continuation(str(task_id), payload)
    return hmac.new(secret.encode(), message.encode(), hashlib.sha256).hexdigest()


def verify_continuation(secret: str, task_id: str, payload: str, signature: str | None) -> bool:
    """Check *signature* against the expected value in constant time."""
    if not signature:
        return False
    expected = sign_continuation(secret, task_id, payload)
    return hmac.compare_digest(expected, signature)


__all__ = [
    "canonical_continuation",
    "sign_continuation",
    "verify_continuation",
]
