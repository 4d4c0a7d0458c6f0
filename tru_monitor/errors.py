class TruMonitorError(Exception):
    pass


class PrivacyViolationError(TruMonitorError):
    def __init__(self, reason, violation_type=None):
        self.reason = reason
        self.violation_type = violation_type
        super().__init__(f"Privacy violation: {reason}")


class InvalidDistributionError(TruMonitorError):
    def __init__(self, metric, entity_kind):
        self.metric = metric
        self.entity_kind = entity_kind
        super().__init__(f"Distribution not allowed: metric={metric!r}, entity={entity_kind!r}")


class BusError(TruMonitorError):
    pass


class BusDisconnectedError(BusError):
    pass


class BusTimeoutError(BusError):
    pass


class RateLimitedError(TruMonitorError):
    pass


class CircuitOpenError(TruMonitorError):
    pass
