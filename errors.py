# Bountyline error taxonomy
# Every operation failure maps to one of five kinds. The HTTP layer turns
# them into {"ok": false, "error": {"code", "message"}} with the status below.
#
#   Conflict        409  guarded transition precondition no longer holds
#   Unauthorized    403  caller is not the required party (401 if anonymous)
#   NotFound        404  unknown listing / proposal / transaction / participant
#   RailFailure     502  funds rail unreachable or declined; state untouched
#   ValidationError 400  malformed input, rejected before any mutation


class MarketError(Exception):
    """Base class for all Bountyline operation errors."""

    code = "market_error"
    http_status = 500

    def __init__(self, message: str, code: str | None = None):
        self.message = message
        if code:
            self.code = code
        super().__init__(f"[{self.code}] {message}")

    def to_dict(self) -> dict:
        return {"code": self.code, "message": self.message}


class Conflict(MarketError):
    code = "conflict"
    http_status = 409


class Unauthorized(MarketError):
    code = "unauthorized"
    http_status = 403


class NotFound(MarketError):
    code = "not_found"
    http_status = 404


class RailFailure(MarketError):
    """Funds rail could not complete the call. The transaction keeps its state."""

    code = "rail_failure"
    http_status = 502


class ValidationError(MarketError):
    code = "validation_error"
    http_status = 400
