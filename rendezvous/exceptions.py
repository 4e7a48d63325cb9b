"""
Custom exceptions for matching and conversation errors.

Each error carries the message shown to the user and the HTTP status/code it
maps to at the API boundary.
"""


class RendezvousError(Exception):
    """Base class for caller errors raised by the matching and chat core"""
    status_code = 400
    code = "bad_request"


class SelfInteractionError(RendezvousError):
    """Raised when a user targets themselves with a like or request"""

    def __init__(self):
        super().__init__("You can't send a request to yourself.")


class NoPendingLikeError(RendezvousError):
    """Raised when accepting a request that does not exist"""
    status_code = 404
    code = "not_found"

    def __init__(self, user_id: str, other_user_id: str):
        self.user_id = user_id
        self.other_user_id = other_user_id
        super().__init__("This request is no longer available.")


class NoSuchMatchError(RendezvousError):
    """Raised when a conversation is addressed by an unknown match id"""
    status_code = 404
    code = "not_found"

    def __init__(self, match_id: int):
        self.match_id = match_id
        super().__init__(f"Conversation {match_id} does not exist.")


class InvalidSenderError(RendezvousError):
    """Raised when a user acts on a conversation they are not part of"""
    status_code = 403
    code = "forbidden"

    def __init__(self, match_id: int, user_id: str):
        self.match_id = match_id
        self.user_id = user_id
        super().__init__("You are not a participant in this conversation.")


class EmptyMessageError(RendezvousError):
    """Raised when a message body is blank"""

    def __init__(self):
        super().__init__("Message can't be empty.")


class MessageTooLongError(RendezvousError):
    """Raised when a message body exceeds the configured length"""

    def __init__(self, max_length: int):
        self.max_length = max_length
        super().__init__(
            f"Message too long (max {max_length} characters).")


class RateLimitedError(RendezvousError):
    """Raised when a user exceeds a per-minute action limit"""
    status_code = 429
    code = "too_many_requests"

    def __init__(self, action: str):
        self.action = action
        super().__init__(
            f"Rate limit: too many {action}; try again in a minute.")
