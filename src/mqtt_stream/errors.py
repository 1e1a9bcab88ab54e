"""
Exception hierarchy for mqtt-stream.

SessionError subclasses invalidate the current broker session and are
retried by the Supervisor. Everything else is either handled where it
happens (publish failures) or fatal.
"""


class MqttStreamError(Exception):
    """Base class for all mqtt-stream errors."""


class ConfigError(MqttStreamError):
    """Invalid flags, environment values, config file or broker address."""


class OperationCancelled(MqttStreamError):
    """A pending broker operation was abandoned because of cancellation."""


class OperationTimeout(OperationCancelled):
    """A pending broker operation did not resolve before its deadline."""


class SessionError(MqttStreamError):
    """Ends the current session; the supervisor starts a new one."""


class ConnectError(SessionError):
    pass


class SubscribeError(SessionError):
    pass


class ConnectionLostError(SessionError):
    pass


class HexDecodeError(SessionError):
    """An input line is not a valid hexadecimal string."""
