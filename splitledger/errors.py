class LedgerServiceError(Exception):
    code = "ledger_error"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(LedgerServiceError):
    code = "validation_error"


class SplitMismatchError(ValidationError):
    code = "split_mismatch"


class NotGroupMemberError(ValidationError):
    code = "not_group_member"


class NotFoundError(LedgerServiceError):
    code = "not_found"


class UserNotFoundError(LedgerServiceError):
    code = "user_not_found"


class DuplicateFriendshipError(LedgerServiceError):
    code = "duplicate_friendship"


class StoreUnavailableError(LedgerServiceError):
    code = "store_unavailable"
