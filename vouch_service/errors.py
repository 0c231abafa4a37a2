from common.error_handling import BusinessLogicError, ServiceError, ErrorCodes

class AccountNotFound(BusinessLogicError):
    code = ErrorCodes.ACCOUNT_NOT_FOUND

    def __init__(self, account_id: str, side: str = None):
        self.account_id = account_id
        self.side = side
        label = f"{side} account" if side else "Account"
        super().__init__(
            f"{label} '{account_id}' not found",
            field=f"{side}_id" if side else "account_id",
            context={"account_id": account_id, "side": side},
        )

class SelfVouchNotAllowed(BusinessLogicError):
    code = ErrorCodes.SELF_VOUCH_NOT_ALLOWED

    def __init__(self, account_id: str):
        self.account_id = account_id
        super().__init__("You cannot vouch for yourself", field="vouchee_id", context={"account_id": account_id})

class InsufficientBalance(BusinessLogicError):
    code = ErrorCodes.INSUFFICIENT_BALANCE

    def __init__(self, account_id: str, balance, required):
        self.account_id = account_id
        self.balance = balance
        self.required = required
        super().__init__(
            f"Insufficient TRUST balance. Available: {balance}, Required: {required}",
            context={"account_id": account_id, "balance": str(balance), "required": str(required)},
        )

class LockTimeout(BusinessLogicError):
    code = ErrorCodes.LOCK_TIMEOUT

    def __init__(self, account_ids, timeout: float):
        self.account_ids = list(account_ids)
        super().__init__(
            f"Could not lock accounts within {timeout:.2f}s; safe to retry",
            context={"account_ids": self.account_ids, "timeout_seconds": timeout},
        )

class ConflictError(BusinessLogicError):
    code = ErrorCodes.CONFLICT

class InvalidInput(BusinessLogicError):
    code = ErrorCodes.INVALID_INPUT

class StorageError(ServiceError):
    code = ErrorCodes.STORAGE_ERROR
