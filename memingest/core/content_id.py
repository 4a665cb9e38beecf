"""
Content-addressed memory identity.

A memory's id depends only on who owns it, which source system it is
attributed to, and its exact content. Re-deriving it from any process on
any date yields the same UUID, so writes keyed on it are idempotent.
"""

import hashlib
import uuid

# Fixed for the lifetime of the store; changing it re-keys every memory.
MEMORY_NAMESPACE = uuid.UUID("f47ac10b-58cc-4372-a567-0e02b2c3d479")

USER_PLACEHOLDER = "{user}"
ASSISTANT_PLACEHOLDER = "{assistant}"


def hash_content(content: str) -> str:
    """Full SHA-256 hex digest of ``content`` encoded as UTF-8."""
    return hashlib.sha256(content.encode("utf-8")).hexdigest()


def derive_memory_id(persona_id: str, source_system_id: str, content: str) -> str:
    """Deterministic UUIDv5 for the (persona, source system, content) triple."""
    if not persona_id:
        raise ValueError("persona_id is required")
    if not source_system_id:
        raise ValueError("source_system_id is required")
    key = f"{persona_id}:{source_system_id}:{hash_content(content)}"
    return str(uuid.uuid5(MEMORY_NAMESPACE, key))


def derive_scoped_id(base_id: str, scope: str) -> str:
    """Stable id for one scoped copy of a legacy record (e.g. per sender)."""
    return str(uuid.uuid5(MEMORY_NAMESPACE, f"{base_id}:{scope}"))


def format_exchange_content(initiator: str, responder: str) -> str:
    """
    Render an exchange as memory text.

    Speaker names stay as placeholders so persona and personality names can
    be substituted when the memory is recalled.
    """
    return (
        f"{USER_PLACEHOLDER}: {initiator.strip()}\n"
        f"{ASSISTANT_PLACEHOLDER}: {responder.strip()}"
    )
