from litestar import Request, Response
from litestar.status_codes import (
    HTTP_400_BAD_REQUEST,
    HTTP_404_NOT_FOUND,
    HTTP_409_CONFLICT,
    HTTP_503_SERVICE_UNAVAILABLE,
)
from idlewatch.errors import (
    AlreadyResolved,
    InvalidState,
    LifecycleError,
    NotFound,
    StoreUnavailable,
)


def lifecycle_error_handler(request: Request, exc: LifecycleError) -> Response:
    if isinstance(exc, NotFound):
        status_code = HTTP_404_NOT_FOUND
    elif isinstance(exc, (AlreadyResolved, InvalidState)):
        status_code = HTTP_409_CONFLICT
    elif isinstance(exc, StoreUnavailable):
        status_code = HTTP_503_SERVICE_UNAVAILABLE
    else:
        status_code = HTTP_400_BAD_REQUEST

    request.logger.warning(f"{request.method} {request.url.path} failed: {exc}")
    return Response(
        content={"status_code": status_code, "detail": str(exc)},
        status_code=status_code,
    )
