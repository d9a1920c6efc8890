# classes/errors.py


class FunctionError(Exception):
    """
    Structured failure surfaced to the caller of a callable function.

    kind is one of FunctionError.KINDS; the server maps it to an HTTP status.
    """

    UNAUTHENTICATED = "unauthenticated"
    INVALID_ARGUMENT = "invalid-argument"
    NOT_FOUND = "not-found"
    PERMISSION_DENIED = "permission-denied"
    INTERNAL = "internal"

    KINDS = (UNAUTHENTICATED, INVALID_ARGUMENT, NOT_FOUND, PERMISSION_DENIED, INTERNAL)

    HTTP_STATUS = {
        UNAUTHENTICATED: 401,
        INVALID_ARGUMENT: 400,
        NOT_FOUND: 404,
        PERMISSION_DENIED: 403,
        INTERNAL: 500,
    }

    def __init__(self, kind: str, message: str, details: dict | None = None):
        if kind not in self.KINDS:
            raise ValueError(f"Unknown error kind: {kind}")
        super().__init__(message)
        self.kind = kind
        self.message = message
        self.details = details

    @property
    def http_status(self) -> int:
        return self.HTTP_STATUS[self.kind]

    def to_dict(self) -> dict:
        body = {"status": self.kind, "message": self.message}
        if self.details:
            body["details"] = self.details
        return {"error": body}


class StoreError(Exception):
    pass


class DocumentNotFound(StoreError):
    def __init__(self, memorial_id: str):
        super().__init__(f"Memorial not found: {memorial_id}")
        self.memorial_id = memorial_id


class DocumentExists(StoreError):
    def __init__(self, memorial_id: str):
        super().__init__(f"Memorial already exists: {memorial_id}")
        self.memorial_id = memorial_id


class TransactionAborted(StoreError):
    pass
