from __future__ import annotations

from .models import Action


def decide(
    pulled_identity: str | None,
    current_identity: str | None,
    has_override: bool,
    drift_detected: bool,
) -> Action:
    """Choose what to do with a target, comparing content identities only.

    Rules, first match wins:
      1) the pulled reference did not resolve        -> PULL_FAIL
      2) the target already runs the pulled identity -> SKIP_PINNED
      3) no explicit override and the running image
         differs from what its declaration names     -> SKIP_MISMATCH
      4) otherwise                                   -> UPDATE
    """
    if not pulled_identity:
        return Action.PULL_FAIL
    if current_identity == pulled_identity:
        return Action.SKIP_PINNED
    if drift_detected and not has_override:
        return Action.SKIP_MISMATCH
    return Action.UPDATE
