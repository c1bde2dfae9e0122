from __future__ import annotations

from dataclasses import dataclass
from http import HTTPStatus


@dataclass(frozen=True)
class SuccessResponse:
    message: str = ""

    @property
    def status_code(self) -> int:
        return int(HTTPStatus.OK)

    def to_http(self) -> tuple[int, dict[str, object]]:
        return self.status_code, {"message": self.message}


@dataclass(frozen=True)
class ErrorResponse:
    """Terminal failure for the current event.

    `error` is the underlying cause. It is logged by whoever produced the
    response and is never serialized back to the webhook sender.
    """

    error: BaseException | None
    status_code: int
    message: str

    def to_http(self) -> tuple[int, dict[str, object]]:
        return self.status_code, {"message": self.message}


Response = SuccessResponse | ErrorResponse


def bad_gateway(error: BaseException | None, message: str) -> ErrorResponse:
    return ErrorResponse(error=error, status_code=int(HTTPStatus.BAD_GATEWAY), message=message)
