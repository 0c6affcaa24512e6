from sqlalchemy import DateTime, Text, TypeDecorator

from scanstore.storage.normalize import decode_blob, encode_blob, to_utc


class VersionedJson(TypeDecorator):
    """Custom type for JSON blobs stored as version-tagged text"""

    impl = Text
    cache_ok = True

    def process_bind_param(self, value, dialect):
        return encode_blob(value)

    def process_result_value(self, value, dialect):
        return decode_blob(value)


class UtcDateTime(TypeDecorator):
    """Custom type for timestamps that always come back as aware UTC datetimes"""

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        """Store as UTC; SQLite drops tzinfo, so everything must share one zone"""
        if value is None:
            return None
        value = to_utc(value)
        if dialect.name == "sqlite":
            return value.replace(tzinfo=None)
        return value

    def process_result_value(self, value, dialect):
        return to_utc(value)
