from enum import Enum


class RedemptionError(str, Enum):
    AUTHENTICATION_REQUIRED = 'AUTHENTICATION_REQUIRED'
    INVALID_FORMAT = 'INVALID_FORMAT'
    CODE_INVALID = 'CODE_INVALID'
    CODE_EXPIRED = 'CODE_EXPIRED'
    CODE_ALREADY_REDEEMED = 'CODE_ALREADY_REDEEMED'


MESSAGES = {
    RedemptionError.AUTHENTICATION_REQUIRED: 'Please sign in to redeem a code.',
    RedemptionError.INVALID_FORMAT: 'Codes are 6 letters and numbers, for example ABC-234.',
    # Unknown and revoked codes share one message.
    RedemptionError.CODE_INVALID: 'This code is not valid. Check it and try again.',
    RedemptionError.CODE_EXPIRED: 'This code has expired and can no longer be redeemed.',
    RedemptionError.CODE_ALREADY_REDEEMED: 'This code has already been redeemed.',
}

HTTP_STATUS = {
    RedemptionError.AUTHENTICATION_REQUIRED: 401,
    RedemptionError.INVALID_FORMAT: 400,
    RedemptionError.CODE_INVALID: 404,
    RedemptionError.CODE_EXPIRED: 410,
    RedemptionError.CODE_ALREADY_REDEEMED: 409,
}


class RedemptionFailure(Exception):
    """Raised inside the redemption engine; converted to a result at its boundary."""

    def __init__(self, error: RedemptionError):
        super().__init__(error.value)
        self.error = error

    @property
    def message(self):
        return MESSAGES[self.error]


class DownloadDenied(Exception):
    """A valid download token whose underlying grant no longer allows the file."""

    MESSAGES = {
        'CLAIM_NOT_FOUND': ('Bonus claim not found. Please contact support.', 404),
        'CLAIM_NOT_APPROVED': ('Your bonus claim is not approved for download.', 403),
        'EMAIL_MISMATCH': ('This link does not match your claim. Please use the link from your email.', 403),
        'ENTITLEMENT_REVOKED': ('Access to this file has been withdrawn. Please contact support.', 403),
    }

    def __init__(self, reason):
        super().__init__(reason)
        self.reason = reason
        self.message, self.status = self.MESSAGES[reason]
