"""Errors raised by the duplicate merge engine."""


class DuplicateError(Exception):
    """Base class for duplicate detection / merge failures."""


class UnknownEntityTypeError(DuplicateError, ValueError):
    """Entity type tag is not one of venues/events/vendors/promoters."""

    def __init__(self, entity_type: object):
        self.entity_type = entity_type
        super().__init__(f"Unknown entity type: {entity_type}")


class EntityNotFoundError(DuplicateError, LookupError):
    """Primary or duplicate id does not resolve to a record of the given type."""

    def __init__(self, entity_type: str, primary_id: str, duplicate_id: str):
        self.entity_type = entity_type
        self.primary_id = primary_id
        self.duplicate_id = duplicate_id
        super().__init__(f"One or both {entity_type} not found")


class SelfMergeError(DuplicateError, ValueError):
    """Primary and duplicate are the same record."""

    def __init__(self, entity_id: str):
        self.entity_id = entity_id
        super().__init__("Cannot merge an entity with itself")


class MergeTransactionError(DuplicateError):
    """The merge transaction failed and was rolled back. Nothing was changed."""

    def __init__(self, entity_type: str, primary_id: str, duplicate_id: str):
        self.entity_type = entity_type
        self.primary_id = primary_id
        self.duplicate_id = duplicate_id
        super().__init__(f"Failed to merge {entity_type}: transaction rolled back")
