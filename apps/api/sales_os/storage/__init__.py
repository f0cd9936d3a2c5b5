from collections.abc import Generator

from fastapi import Depends
from sqlalchemy.orm import Session

from sales_os.core.config import get_settings
from sales_os.core.database import get_db
from sales_os.storage.airtable import AirtableRowStore
from sales_os.storage.base import AllOf, FieldEquals, Row, RowFilter, RowStore, SortSpec, all_of
from sales_os.storage.sql import RowRecord, SqlRowStore


def get_row_store(db: Session = Depends(get_db)) -> Generator[RowStore, None, None]:
    settings = get_settings()
    if settings.row_store_backend.lower() == "airtable":
        yield AirtableRowStore(
            api_key=settings.airtable_api_key,
            base_id=settings.airtable_base_id,
            api_url=settings.airtable_api_url,
            timeout=settings.row_store_timeout_seconds,
        )
        return
    yield SqlRowStore(db)


__all__ = [
    "AirtableRowStore",
    "AllOf",
    "FieldEquals",
    "Row",
    "RowFilter",
    "RowRecord",
    "RowStore",
    "SortSpec",
    "SqlRowStore",
    "all_of",
    "get_row_store",
]
