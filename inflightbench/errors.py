"""Exception taxonomy for the harness."""


class InflightBenchError(Exception):
    """Base class for every harness error."""


class SetupError(InflightBenchError):
    """Invalid configuration, or no identity could be brought up."""


class SessionError(InflightBenchError):
    def __init__(self, client_id: str, message: str):
        super().__init__(f"[{client_id}] {message}")
        self.client_id = client_id


class ConnectFailed(SessionError):
    """Broker refused the connection or could not be reached."""

    def __init__(self, client_id: str, message: str, reason_code: int | None = None):
        super().__init__(client_id, message)
        self.reason_code = reason_code


class SubscribeFailed(SessionError):
    """SUBACK carried a failure reason code."""


class BarrierTimeout(SessionError):
    """A bounded wait (connect, subscribe, readiness barrier) expired."""


class PublishFailed(SessionError):
    """Broker rejected, or did not acknowledge in time, a single publish."""
