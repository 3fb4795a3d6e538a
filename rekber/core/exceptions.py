from fastapi import HTTPException, status


class TransactionNotFoundError(HTTPException):
    def __init__(self, invoice: str):
        super().__init__(status_code=status.HTTP_404_NOT_FOUND, detail=f"Transaction {invoice} not found")


class ProductNotFoundError(HTTPException):
    def __init__(self, product_id: int):
        super().__init__(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Product {product_id} not found or not available",
        )


class UserNotFoundError(HTTPException):
    def __init__(self, user_id: int):
        super().__init__(status_code=status.HTTP_404_NOT_FOUND, detail=f"User {user_id} not found")


class InvalidTransactionStateError(HTTPException):
    def __init__(self, current: str, expected: str):
        super().__init__(
            status_code=status.HTTP_409_CONFLICT,
            detail=f"Transaction is '{current}', expected '{expected}'",
        )
        self.current = current


class OutOfStockError(HTTPException):
    def __init__(self, product_id: int, requested: int):
        super().__init__(
            status_code=status.HTTP_409_CONFLICT,
            detail=f"Insufficient stock for product {product_id} (requested {requested})",
        )


class UnauthorizedError(HTTPException):
    def __init__(self, detail: str = "Invalid or missing authentication"):
        super().__init__(status_code=status.HTTP_401_UNAUTHORIZED, detail=detail)


class ForbiddenError(HTTPException):
    def __init__(self, detail: str = "Not authorized for this action"):
        super().__init__(status_code=status.HTTP_403_FORBIDDEN, detail=detail)


class ValidationError(HTTPException):
    def __init__(self, detail: str):
        super().__init__(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=detail)


class InvalidSignatureError(HTTPException):
    def __init__(self):
        super().__init__(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid signature")


class MerchantCodeMismatchError(HTTPException):
    def __init__(self):
        super().__init__(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid merchant code")


class AmountMismatchError(HTTPException):
    def __init__(self, expected, received):
        super().__init__(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Amount mismatch: expected {expected}, received {received}",
        )


class GatewayConfigurationError(HTTPException):
    def __init__(self):
        super().__init__(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Payment gateway configuration error",
        )


class StoreBusyError(HTTPException):
    def __init__(self, retry_after_seconds: int = 1):
        super().__init__(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Resource is busy, retry the request",
            headers={"Retry-After": str(retry_after_seconds)},
        )
