class SchedoputerError(Exception):
    status_code = 400

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class InvalidInput(SchedoputerError):
    pass


class NotFound(SchedoputerError):
    pass


class NotModifiable(SchedoputerError):
    pass


class NotUndoable(SchedoputerError):
    pass


class ExternalTransient(SchedoputerError):
    """Resource call failed in a way the next scheduler tick may retry."""


class ExternalFatal(SchedoputerError):
    """Resource call failed for good; the owning job is terminated."""
