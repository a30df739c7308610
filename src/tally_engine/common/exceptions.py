"""Tally-Engine exception hierarchy."""


class TallyError(Exception):
    """Base exception for all Tally errors."""

    def __init__(self, message: str = "", code: str = "TALLY_ERROR"):
        self.message = message
        self.code = code
        super().__init__(message)


class IllegalPoolStateError(TallyError):
    """Raised when a pool cannot be built from the pool it was given.

    A primary pool can never be derived from a bonus (derived) pool without
    the originating subscription.
    """

    def __init__(self, message: str = "Illegal pool state"):
        super().__init__(message, code="ILLEGAL_STATE")


class InvalidAttributeError(TallyError):
    """Raised when a product attribute that defines pool quantity is malformed.

    Only ``instance_multiplier`` is fatal. A malformed ``virt_limit`` means
    the product has no virtualization support and is ignored.
    """

    def __init__(self, message: str = "Invalid product attribute", attribute: str = ""):
        self.attribute = attribute
        super().__init__(message, code="INVALID_ATTRIBUTE")


class ScenarioError(TallyError):
    """Raised when a scenario file cannot be loaded or references unknown records."""

    def __init__(self, message: str = "Invalid scenario"):
        super().__init__(message, code="INVALID_SCENARIO")
