from typing import Optional

from fastapi.encoders import jsonable_encoder

MAX_PAGE_SIZE = 100


def ok(data=None, message: Optional[str] = None, **extra):
    body = {"success": True}
    if message:
        body["message"] = message
    body["data"] = data
    body.update(extra)
    return jsonable_encoder(body)


def page_window(page: int, limit: int):
    page = max(1, page)
    limit = max(1, min(MAX_PAGE_SIZE, limit))
    return page, limit, (page - 1) * limit
