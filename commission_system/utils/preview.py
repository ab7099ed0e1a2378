# commission_system/utils/preview.py
"""
Dry-run preview tokens.

A token is the SHA-256 of the exact decisions a committing run would
apply. Committing with a token from a different preview is refused.
"""
import hashlib
import json
from typing import Any, Dict, Optional

from config import Config
from commission_system.errors import PreviewMismatchError


def preview_token(payload: Dict[str, Any]) -> str:
    raw = json.dumps(payload, sort_keys=True, default=str)
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()


def check_preview(expected: str, presented: Optional[str]):
    """
    Raises:
        PreviewMismatchError: token missing while REQUIRE_DRY_RUN_PREVIEW
            is on, or token of a different preview
    """
    if presented is None:
        if Config.get(Config.REQUIRE_DRY_RUN_PREVIEW, True):
            raise PreviewMismatchError("A dry-run preview token is required before committing")
        return
    if presented != expected:
        raise PreviewMismatchError("Decisions changed since the dry run; run the preview again")
