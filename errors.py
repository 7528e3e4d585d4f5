from fastapi import HTTPException


class ValidationFailed(HTTPException):
    def __init__(self, detail: str):
        super().__init__(status_code=422, detail=detail)


class AccessDenied(HTTPException):
    def __init__(self, detail: str = "Access denied"):
        super().__init__(status_code=401, detail=detail)


class NotFound(HTTPException):
    def __init__(self, detail: str):
        super().__init__(status_code=404, detail=detail)
