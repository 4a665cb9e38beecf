"""
Identity resolution package.
"""

from memingest.identity.resolver import ORPHAN_PERSONA_ID, IdentityCache, IdentityResolver

__all__ = ["ORPHAN_PERSONA_ID", "IdentityCache", "IdentityResolver"]
