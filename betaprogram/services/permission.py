"""
Beta program: capability checks.

Each engine operation performs exactly one capability check at its top:
the caller's role must grant the action, and when the operation acts on
an owned resource (a publisher's title, a tester's own enrollment) the
caller must be that owner.

The caller identity is always an explicit parameter; nothing here reads
request state.

Usage:
    from betaprogram.services.permission import Caller, check_capability

    check_capability(caller, "task.create", owner_id=title.publisher_id)

    if has_capability(caller, "feedback.triage"):
        ...
"""

from dataclasses import dataclass

from betaprogram.core.exceptions import ForbiddenError

ROLE_TESTER = "tester"
ROLE_PUBLISHER = "publisher"

ROLES = {ROLE_TESTER, ROLE_PUBLISHER}

ROLE_CAPABILITIES = {
    ROLE_TESTER: {
        "agreement.view",
        "agreement.accept",
        "enrollment.join",
        "enrollment.leave",
        "enrollment.session_time",
        "enrollment.view_own",
        "task.view",
        "task.complete",
        "feedback.submit",
        "feedback.view_own",
    },
    ROLE_PUBLISHER: {
        "title.register",
        "title.open_testing",
        "title.promote",
        "title.overview",
        "agreement.stats",
        "enrollment.deactivate",
        "task.create",
        "task.update",
        "task.delete",
        "task.progress",
        "feedback.view",
        "feedback.triage",
    },
}


@dataclass(frozen=True)
class Caller:
    """Identity supplied by the authenticated API layer (trusted input)."""

    user_id: str
    role: str

    @property
    def is_publisher(self) -> bool:
        return self.role == ROLE_PUBLISHER

    @property
    def is_tester(self) -> bool:
        return self.role == ROLE_TESTER


def has_capability(caller: Caller | None, action: str, owner_id: str | None = None) -> bool:
    """
    Check whether the caller may perform an action.

    Args:
        caller: Caller identity, or None for an anonymous request.
        action: Capability string (e.g. 'task.create', 'feedback.submit').
        owner_id: When given, the caller must be this identity.

    Returns:
        True if the role grants the action and ownership matches.
    """
    if caller is None or not caller.user_id:
        return False
    if action not in ROLE_CAPABILITIES.get(caller.role, set()):
        return False
    if owner_id is not None and str(owner_id) != str(caller.user_id):
        return False
    return True


def check_capability(caller: Caller | None, action: str, owner_id: str | None = None) -> None:
    """
    Assert the caller may perform an action; raise ForbiddenError if not.

    Raises:
        ForbiddenError: If the role lacks the action or the caller is not the owner.
    """
    if not has_capability(caller, action, owner_id):
        user_id = caller.user_id if caller else None
        raise ForbiddenError(user_id, action)


def get_capabilities(caller: Caller) -> set[str]:
    """Return the set of actions the caller's role grants."""
    return set(ROLE_CAPABILITIES.get(caller.role, set()))
