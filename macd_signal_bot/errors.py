from __future__ import annotations


class SignalBotError(Exception):
    pass


class DataUnavailable(SignalBotError):
    """Not enough candle history (or no higher-timeframe data) to evaluate."""


class InsufficientData(DataUnavailable):
    pass


class TransientNetworkError(SignalBotError):
    """REST/WS failure that is expected to clear on a later attempt."""


class InvariantViolation(SignalBotError):
    pass


class NotificationFailure(SignalBotError):
    pass
