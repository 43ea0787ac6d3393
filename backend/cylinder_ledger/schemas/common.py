from pydantic import BaseModel


class PaginationMeta(BaseModel):
    total_items: int
    total_pages: int
    page: int
    limit: int


def pagination_meta(*, total_items: int, page: int, limit: int) -> PaginationMeta:
    total_pages = max(1, (total_items + limit - 1) // limit) if total_items else 1
    return PaginationMeta(total_items=total_items, total_pages=total_pages, page=page, limit=limit)


def normalize_currency(value: str | None) -> str | None:
    if value is None:
        return None
    cleaned = value.strip().upper()
    if len(cleaned) != 3 or not cleaned.isalpha():
        raise ValueError("Currency must be a 3-letter ISO code")
    return cleaned
