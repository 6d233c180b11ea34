class LinesockError(Exception):
    pass


class ClosedChannelError(LinesockError):
    """
    The channel was closed before, or while, the operation ran.
    """

    def __init__(self, msg: str = "channel is closed"):
        super().__init__(msg)


class AcceptPendingError(LinesockError):
    pass


class ReadPendingError(LinesockError):
    pass


class WritePendingError(LinesockError):
    pass


class LineTooLongError(LinesockError):

    def __init__(self, limit: int):
        self.limit = limit
        super().__init__(f"line exceeds {limit} bytes without a delimiter")


class ListenerStateError(LinesockError):
    pass
