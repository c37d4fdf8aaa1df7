from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import DateTime, String, orm, types
from sqlalchemy.orm import mapped_column

from typing_extensions import Annotated

str50 = Annotated[str, 50]
str100 = Annotated[str, 100]
str255 = Annotated[str, 255]
str512 = Annotated[str, 512]
guidpk = Annotated[str, mapped_column(String(64), primary_key=True)]


class UTCDateTime(types.TypeDecorator):
    """
    Timezone-aware datetime column that always hands back UTC values.

    PostgreSQL keeps the offset, SQLite does not. Values are normalized to UTC on the way in and naive values
    read back are tagged as UTC so comparisons against `datetime.now(timezone.utc)` work on both.
    """

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(
        self, value: Optional[datetime], dialect
    ) -> Optional[datetime]:
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)

    def process_result_value(
        self, value: Optional[datetime], dialect
    ) -> Optional[datetime]:
        if value is not None and value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value


class Base(orm.DeclarativeBase):
    type_annotation_map = {
        str50: String(50),
        str100: String(100),
        str255: String(255),
        str512: String(512),
        guidpk: String(64),
        datetime: UTCDateTime(),
    }
