"""
Error taxonomy shared by the service layer and the HTTP handlers.

Each error is an HTTPException so FastAPI can raise it straight out of a
dependency or a repository call; main.py renders every one of them as
{"message": detail}.
"""
from fastapi import HTTPException


class Unauthorized(HTTPException):
    def __init__(self, message: str = "Unauthorized"):
        super().__init__(status_code=401, detail=message)


class Forbidden(HTTPException):
    def __init__(self, message: str = "Forbidden"):
        super().__init__(status_code=403, detail=message)


class NotFound(HTTPException):
    def __init__(self, message: str = "Not found"):
        super().__init__(status_code=404, detail=message)


class BadRequest(HTTPException):
    def __init__(self, message: str = "Bad request"):
        super().__init__(status_code=400, detail=message)


class Internal(HTTPException):
    def __init__(self, message: str = "Something went wrong!"):
        super().__init__(status_code=500, detail=message)
