class LifecycleError(Exception):
    """Base class for interaction lifecycle failures."""


class NotFound(LifecycleError):
    def __init__(self, kind: str, identifier: str):
        super().__init__(f"{kind} with ID {identifier} not found")
        self.kind = kind
        self.identifier = identifier


class AlreadyResolved(LifecycleError):
    def __init__(self, interaction_id: str):
        super().__init__(f"Interaction {interaction_id} is already resolved")
        self.interaction_id = interaction_id


class InvalidState(LifecycleError):
    def __init__(self, interaction_id: str, status: str):
        super().__init__(
            f"Cannot warn interaction {interaction_id} with status: {status}"
        )
        self.interaction_id = interaction_id
        self.status = status


class AlreadyWarned(InvalidState):
    def __init__(self, interaction_id: str):
        LifecycleError.__init__(
            self, f"Interaction {interaction_id} has already been warned"
        )
        self.interaction_id = interaction_id
        self.status = "RUNNING"


class StoreUnavailable(LifecycleError):
    """The conversation store could not complete an operation."""
