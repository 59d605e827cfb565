"""Exception hierarchy shared across the reconciliation engine."""


class FleetlineError(Exception):
    """Base for all errors raised by fleetline."""


class TransportError(FleetlineError):
    """The device could not be reached or answered with something unusable."""


class TransportTimeout(TransportError):
    pass


class TransportAuthError(TransportError):
    pass


class TransportProtocolError(TransportError):
    pass


class ConfigurationError(FleetlineError, ValueError):
    """A desired account is malformed and must not be sent to a device."""


class PartialApplyError(FleetlineError):
    """Some account operations in a batch failed while others succeeded.

    ``failures`` maps username to the error message recorded for it.
    """

    def __init__(self, failures: dict[str, str]) -> None:
        self.failures = failures
        names = ", ".join(sorted(failures))
        super().__init__(f"{len(failures)} account operation(s) failed: {names}")


class InvariantViolation(FleetlineError):
    """A write would have broken a storage-level invariant."""
