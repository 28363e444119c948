class FinanceError(Exception):
    pass


class ValidationError(FinanceError, ValueError):
    pass


class NotFoundError(FinanceError, LookupError):
    pass


class CategoryInUseError(FinanceError):
    def __init__(self, category_name: str) -> None:
        super().__init__(
            f"Category '{category_name}' has a budget set; "
            "set its budget to 0 before deleting it"
        )
        self.category_name = category_name


class PersistenceError(FinanceError, RuntimeError):
    pass


class AdapterError(FinanceError, RuntimeError):
    pass


class NotAuthenticatedError(FinanceError):
    def __init__(self, message: str = "User not logged in") -> None:
        super().__init__(message)


class OperationInProgressError(FinanceError):
    pass
