# Error types shared by the API, the cipher and the delivery scheduler

class LegacyNoteError(Exception):
    status_code = 500

    def __init__(self, message: str = None):
        super().__init__(message or self.__class__.__name__)
        self.message = message or self.__class__.__name__


class ValidationError(LegacyNoteError):
    """Invalid request payload, with the offending field"""
    status_code = 400

    def __init__(self, field: str, message: str):
        super().__init__(f'{field}: {message}')
        self.field = field
        self.message = f'Invalid {field}: {message}'


class DecryptionError(LegacyNoteError):
    """Ciphertext is malformed or was encrypted with a different key"""
    status_code = 500


class LinkGenerationError(LegacyNoteError):
    status_code = 500


class DeliveryTransientError(LegacyNoteError):
    """Mail relay timed out, refused the connection or replied with a temporary error.
    The recipient is retried on the next scheduler cycle."""
    status_code = 503


class DeliveryRejected(LegacyNoteError):
    """The relay permanently refused the recipient, retrying will not help"""
    status_code = 502


class MutationRejected(LegacyNoteError):
    status_code = 400

    ALREADY_DELIVERED = 'already delivered'
    PAST_DUE = 'past due'

    def __init__(self, reason: str):
        super().__init__(f'Cannot modify a note that is {reason}')
        self.reason = reason
