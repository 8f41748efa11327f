from __future__ import annotations


class RentalError(Exception):
    """Base class for rental lifecycle failures surfaced to callers."""


class ToyNotFound(RentalError):
    def __init__(self, toy_id):
        super().__init__(f"Toy {toy_id} not found.")
        self.toy_id = toy_id


class InsufficientStock(RentalError):
    def __init__(self, toy_id, toy_name: str | None, requested: int, available: int | None = None):
        label = f"{toy_name} ({toy_id})" if toy_name else str(toy_id)
        detail = f"Insufficient stock for toy {label}: requested {requested}"
        if available is not None:
            detail += f", available {available}"
        super().__init__(detail + ".")
        self.toy_id = toy_id
        self.requested = requested
        self.available = available


class RentalNotFound(RentalError):
    def __init__(self, rental_id):
        super().__init__(f"Rental {rental_id} not found.")
        self.rental_id = rental_id


class InvalidRentalState(RentalError):
    pass


class InvalidReturnDate(RentalError):
    pass


class UnknownRentalItem(RentalError):
    def __init__(self, rental_item_id):
        super().__init__(f"Rental item {rental_item_id} not found in rental.")
        self.rental_item_id = rental_item_id


class InvalidCondition(RentalError):
    def __init__(self, condition):
        super().__init__(f"Invalid condition: {condition}")
        self.condition = condition


class InvalidRentalRequest(RentalError):
    pass


class PersistenceFailure(RentalError):
    pass


class AccountError(Exception):
    pass


class DuplicateAccount(AccountError):
    pass


class InvalidCredentials(AccountError):
    pass


class AccountInUse(AccountError):
    pass
