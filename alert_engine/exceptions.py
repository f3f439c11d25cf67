"""
ClinicalSentry - Alert Engine Exceptions
"""


class AlertEngineError(Exception):
    """Base class for alert engine errors"""


class MalformedObservation(AlertEngineError, ValueError):
    """A lab or vital value that cannot be parsed as a number"""

    def __init__(self, field: str, value: object):
        self.field = field
        self.value = value
        super().__init__(f"Unparsable value for {field}: {value!r}")


class AlertNotFoundError(AlertEngineError, LookupError):
    """No alert with the given id exists in the store"""

    def __init__(self, alert_id: str):
        self.alert_id = alert_id
        super().__init__(f"Alert {alert_id} not found")


class InvalidAlertOperation(AlertEngineError):
    """Lifecycle transition that is not allowed for the alert's state or severity"""

    def __init__(self, alert_id: str, reason: str):
        self.alert_id = alert_id
        self.reason = reason
        super().__init__(reason)


class AlertStoreError(AlertEngineError):
    """The backing alert store could not be read or written"""
