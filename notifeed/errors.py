# notifeed/errors.py
"""
Exception taxonomy for the notification engine.
"""


class NotifeedError(Exception):
    """Base exception for notification engine errors"""
    status_code = 500

    def __init__(self, message: str, status_code: int = None):
        super().__init__(message)
        if status_code:
            self.status_code = status_code


class HistoryApiError(NotifeedError):
    """History API request failed or answered with an unexpected shape"""
    status_code = 502


class ProtocolError(NotifeedError):
    """Malformed push frame or record payload"""
    status_code = 400


class CredentialError(NotifeedError):
    """Bearer credential missing, malformed or expired"""
    status_code = 401
