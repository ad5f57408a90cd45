from typing import Any, Dict, Optional

from fastapi.responses import JSONResponse

NO_STORE_HEADERS = {
    "Cache-Control": "no-store, no-cache, must-revalidate, max-age=0",
    "Pragma": "no-cache",
    "Expires": "0",
}

def no_store_json(data, status_code: int = 200, headers: Optional[Dict[str, str]] = None):
    """Return JSONResponse with no-store caching headers."""
    merged = dict(NO_STORE_HEADERS)
    if headers:
        merged.update(headers)
    return JSONResponse(content=data, status_code=status_code, headers=merged)


def error_envelope(message: str, extra: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    body: Dict[str, Any] = {"success": False, "message": message}
    if extra:
        body.update(extra)
    return body
