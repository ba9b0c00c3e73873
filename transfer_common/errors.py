# transfer_common/errors.py


class ConfigurationError(ValueError):
    """
    Raised when an engine is configured with values it cannot run with,
    e.g. a port outside 1-65535. Raised before any socket is opened.
    """


class TransferError(Exception):
    """
    A file transfer failed: missing file, undecodable chunk, disk error.
    The message is sent to the peer as ERROR:<message>; the session stays open.
    """


class TransferInProgressError(TransferError):
    """A second upload/download was requested while one is still running."""

    def __init__(self, filename: str):
        super().__init__(f"Transfer in progress: {filename}")
        self.filename = filename
