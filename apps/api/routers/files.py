from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import Response

from apps.api.deps.deps import get_resolver
from apps.api.services.files import FileResolver


router = APIRouter(prefix="/api/files", tags=["files"])


@router.api_route("/{path:path}", methods=["GET", "HEAD"])
async def serve_file(
    path: str,
    request: Request,
    teacher_id: Optional[str] = Query(default=None, alias="teacherId"),
    session_id: Optional[str] = Query(default=None, alias="sessionId"),
    resolver: FileResolver = Depends(get_resolver),
) -> Response:
    resolved = await resolver.resolve(
        path,
        requester_id=teacher_id or None,
        session_id=session_id or None,
        include_body=request.method != "HEAD",
    )
    return Response(content=resolved.data or b"", status_code=200, headers=resolved.headers)
