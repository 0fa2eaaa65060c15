from fastapi import HTTPException, Request


def current_user(request: Request) -> str:
    """User id placed on the request by the upstream auth middleware."""
    header = request.app.state.user_header
    user_id = request.headers.get(header)
    if not user_id:
        raise HTTPException(401, "Unauthorized")
    return user_id
