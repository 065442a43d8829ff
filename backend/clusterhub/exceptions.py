"""Core exceptions.

Every failure raised by the service layer derives from ClusterHubError and
carries a stable ``code`` so callers (and the HTTP adapter) can map it
without inspecting messages.
"""


class ClusterHubError(Exception):
    """Base exception for service-layer errors."""

    def __init__(self, message: str, code: str = "CLUSTERHUB_ERROR"):
        self.message = message
        self.code = code
        super().__init__(message)


class NotFoundError(ClusterHubError):
    """Referenced entity does not exist."""

    def __init__(self, entity: str, entity_id: int | None = None):
        self.entity = entity
        self.entity_id = entity_id
        suffix = f" {entity_id}" if entity_id is not None else ""
        super().__init__(
            message=f"{entity.capitalize()}{suffix} not found",
            code="NOT_FOUND",
        )


class ForbiddenError(ClusterHubError):
    """Authorization or access-resolution failure."""

    def __init__(self, message: str = "Access denied"):
        super().__init__(message=message, code="FORBIDDEN")


class ConflictError(ClusterHubError):
    """Operation would violate a store invariant."""

    def __init__(self, message: str, code: str = "CONFLICT"):
        super().__init__(message=message, code=code)


class ConcurrentModificationError(ConflictError):
    """A concurrent writer changed the state this operation was based on.

    Raised by admin promotion when the conflict policy is ``reject``. The
    caller should re-fetch the current state and retry.
    """

    def __init__(self, group: str, group_id: int, expected: int | None, actual: int | None):
        self.group = group
        self.group_id = group_id
        self.expected = expected
        self.actual = actual
        super().__init__(
            message=(
                f"{group.capitalize()} {group_id} changed concurrently: "
                f"expected admin {expected}, found {actual}"
            ),
            code="CONCURRENT_MODIFICATION",
        )


class InvalidStateError(ClusterHubError):
    """Operation is not valid for the current state of the entity."""

    def __init__(self, message: str, code: str = "INVALID_STATE"):
        super().__init__(message=message, code=code)


class NotAMemberError(InvalidStateError):
    """Target user must already be a member of the group."""

    def __init__(self, group: str, group_id: int, user_id: int):
        self.group = group
        self.group_id = group_id
        self.user_id = user_id
        super().__init__(
            message=f"User {user_id} is not a member of {group} {group_id}",
            code="NOT_A_MEMBER",
        )


class UnavailableError(ClusterHubError):
    """Transient store failure; the operation had no effect."""

    def __init__(self, operation: str, reason: str | None = None):
        self.operation = operation
        detail = f": {reason}" if reason else ""
        super().__init__(
            message=f"Store unavailable during {operation}{detail}",
            code="UNAVAILABLE",
        )
