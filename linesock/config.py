class Config:

    def __init__(
            self,
            host=None,
            port=8888,
            backlog=511,
            timeout_graceful_shutdown=None,
            encoding="utf-8"
    ):
        self.host = host
        self.port = port
        self.backlog = backlog
        self.timeout_graceful_shutdown = timeout_graceful_shutdown
        self.encoding = encoding
