"""
api/responses.py -- Builders for the JSON envelope.

Every JSON response, success or failure, has the same shape:

    {"success": true,  "data": {...}, "message": "User created."}
    {"success": false,               "message": "User not found with ID: 7"}

data is omitted when there is nothing to return. Pydantic models inside data
are dumped with their camelCase aliases.
"""

from __future__ import annotations

from typing import Any

from fastapi.responses import JSONResponse
from pydantic import BaseModel


def _dump(data: Any) -> Any:
    if isinstance(data, BaseModel):
        return data.model_dump(mode="json", by_alias=True)
    if isinstance(data, list):
        return [_dump(item) for item in data]
    return data


def ok(message: str, data: Any = None, status_code: int = 200) -> JSONResponse:
    content: dict[str, Any] = {"success": True, "message": message}
    if data is not None:
        content["data"] = _dump(data)
    return JSONResponse(status_code=status_code, content=content)


def fail(message: str, status_code: int) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"success": False, "message": message})
