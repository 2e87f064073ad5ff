from __future__ import annotations


class ErrorKind:
    INVALID_INPUT = "INVALID_INPUT"
    UNAUTHORIZED = "UNAUTHORIZED"
    FORBIDDEN = "FORBIDDEN"
    NOT_FOUND = "NOT_FOUND"
    INVALID_TRANSITION = "INVALID_TRANSITION"
    INVALID_STATE = "INVALID_STATE"
    CAPACITY_EXCEEDED = "CAPACITY_EXCEEDED"
    SECURITY_VIOLATION = "SECURITY_VIOLATION"
    INTERNAL = "INTERNAL"

    HTTP_STATUS = {
        INVALID_INPUT: 400,
        UNAUTHORIZED: 401,
        FORBIDDEN: 403,
        NOT_FOUND: 404,
        INVALID_TRANSITION: 400,
        INVALID_STATE: 400,
        CAPACITY_EXCEEDED: 400,
        SECURITY_VIOLATION: 500,
        INTERNAL: 500,
    }


def status_for(kind: str | None) -> int:
    return int(ErrorKind.HTTP_STATUS.get((kind or "").strip().upper(), 500))


def ok(**payload) -> dict:
    return {"ok": True, **payload}


def fail(kind: str, message: str, **details) -> dict:
    out = {"ok": False, "error": kind, "message": message}
    if details:
        out["details"] = details
    return out


def result_status(result: dict, *, success_status: int = 200) -> int:
    if result.get("ok"):
        return int(success_status)
    return status_for(result.get("error"))
