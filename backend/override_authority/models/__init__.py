from .auth import User, SessionToken
from .thresholds import OverrideThreshold, ThresholdApprovalLevel, ThresholdException
from .credentials import ManagerPin
from .requests import OverrideRequest
from .audit import OverrideLog, ImmutableRecordError
from .rate_limits import PinAttemptCounter

__all__ = [
    'User', 'SessionToken',
    'OverrideThreshold', 'ThresholdApprovalLevel', 'ThresholdException',
    'ManagerPin',
    'OverrideRequest',
    'OverrideLog', 'ImmutableRecordError',
    'PinAttemptCounter',
]
