from fastapi import Request


def client_ip(request: Request) -> str:
    """Best-effort caller address for the audit trail.

    Honours the first hop of `X-Forwarded-For` when the engine sits behind a
    reverse proxy.
    """
    forwarded = request.headers.get("X-Forwarded-For", "")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else ""
