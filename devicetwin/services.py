import logging
from collections import Counter
from typing import Iterable, List, Mapping, Optional

from django.db.models import Q, QuerySet

from devicetwin.conf import get_database_alias
from devicetwin.models import DeviceMeta

logger = logging.getLogger(__name__)

# Caps on how much one store call may read or write
MAX_QUERY_SIZE = 10000  # Maximum rows returned by a prefix query
MAX_BATCH_SIZE = 10000  # Maximum records in a single batch upsert
BATCH_CHUNK_SIZE = 1000  # Rows per upsert statement in a batch

# Columns overwritten when an upsert hits an existing key
UPSERT_FIELDS = ["value", "type"]

# Highest code point; appended to a prefix it bounds every key that starts
# with that prefix.
PREFIX_UPPER_BOUND = "\U0010ffff"


def device_meta_filter(
    key: Optional[str] = None,
    of_type: Optional[str] = None,
    prefix: Optional[str] = None,
) -> Q:
    """
    Build the row filter shared by every keyed statement.

    Arguments left as None add no condition; an empty string is a real
    value and matches only empty columns. The prefix match is a key range
    compared with the column collation, so it is case-sensitive on SQLite,
    where LIKE is not.
    """
    condition = Q()
    if key is not None:
        condition &= Q(key=key)
    if of_type is not None:
        condition &= Q(type=of_type)
    if prefix is not None:
        condition &= Q(key__gte=prefix, key__lt=prefix + PREFIX_UPPER_BOUND)
    return condition


class DeviceMetaStore:
    """
    Persistence operations for device metadata records.

    Every operation issues one statement on the configured database alias
    and lets backend exceptions propagate unchanged. Use
    ``devicetwin.errors.is_non_unique_name_error`` to classify them.
    """

    def __init__(self, using: Optional[str] = None):
        """
        Args:
            using: Django database alias to run statements on; defaults to
                the DEVICE_META_DB_ALIAS setting
        """
        self.using = using or get_database_alias()

    def _objects(self) -> QuerySet:
        return DeviceMeta.objects.using(self.using)

    def _filtered(self, **conditions) -> QuerySet:
        return self._objects().filter(device_meta_filter(**conditions))

    @staticmethod
    def _check_update_columns(columns: Iterable[str]) -> None:
        # Keys are identities; moving a record to another key is delete + save.
        key_names = {"pk", DeviceMeta._meta.pk.name}
        rejected = sorted(key_names.intersection(columns))
        if rejected:
            raise ValueError(f"Cannot update key column of device meta: {rejected}")

    def save_device_meta(self, meta: DeviceMeta) -> None:
        """
        Insert a new record.

        Raises:
            django.db.IntegrityError: If a record with the same key exists
        """
        self._objects().create(**meta.to_dict())
        logger.debug(f"Saved device meta {meta.key}")

    def delete_device_meta_by_key(self, key: str) -> int:
        """
        Delete every record with the given key.

        Returns:
            Number of rows deleted; 0 when the key did not exist
        """
        deleted, _ = self._filtered(key=key).delete()
        logger.debug(f"Deleted {deleted} device meta rows for {key}")
        return deleted

    def update_device_meta(self, meta: DeviceMeta) -> int:
        """
        Overwrite the stored record that has ``meta.key``.

        A missing key updates nothing and is not an error; the record is
        never inserted by this call.

        Returns:
            Number of rows updated
        """
        updated = self._filtered(key=meta.key).update(**meta.field_values())
        logger.debug(f"Updated {updated} device meta rows for {meta.key}")
        return updated

    def insert_or_update(self, meta: DeviceMeta) -> None:
        """
        Atomic upsert keyed on ``meta.key``.

        Issues a single INSERT ... ON CONFLICT DO UPDATE statement, so a
        racing insert of the same key never produces a duplicate-key error.
        """
        self._objects().bulk_create(
            [DeviceMeta.from_dict(meta.to_dict())],
            update_conflicts=True,
            unique_fields=["key"],
            update_fields=UPSERT_FIELDS,
        )
        logger.debug(f"Upserted device meta {meta.key}")

    def update_device_meta_field(self, key: str, col: str, value) -> int:
        """
        Set one column on the records matching ``key``.

        Raises:
            ValueError: If ``col`` is the key column
            django.core.exceptions.FieldDoesNotExist: If ``col`` is not a
                DeviceMeta field

        Returns:
            Number of rows updated
        """
        self._check_update_columns([col])
        updated = self._filtered(key=key).update(**{col: value})
        logger.debug(f"Updated {col} on {updated} device meta rows for {key}")
        return updated

    def update_device_meta_fields(
        self, key: str, fields: Optional[Mapping[str, object]]
    ) -> int:
        """
        Set several columns on the records matching ``key`` in one statement.

        An empty or None mapping is a no-op: nothing is sent to the database
        and 0 is returned.

        Raises:
            ValueError: If ``fields`` names the key column

        Returns:
            Number of rows updated
        """
        if not fields:
            return 0

        self._check_update_columns(fields)

        updated = self._filtered(key=key).update(**dict(fields))
        logger.debug(
            f"Updated {sorted(fields)} on {updated} device meta rows for {key}"
        )
        return updated

    def query_device_meta(self, key: str, of_type: str) -> List[DeviceMeta]:
        """
        Return the records with the given key and type.

        Returns:
            List of matching records, empty when nothing matches
        """
        return list(self._filtered(key=key, of_type=of_type))

    def query_all_device_meta(self, key: str, of_type: str) -> List[DeviceMeta]:
        """
        Return every record with the given key and type.

        Same filter as ``query_device_meta``; used by callers that expect
        several typed rows for one key.
        """
        return list(self._filtered(key=key, of_type=of_type))

    def query_device_meta_by_prefix(
        self,
        prefix: str,
        of_type: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> List[DeviceMeta]:
        """
        Return the records whose key starts with ``prefix``, ordered by key.

        Args:
            prefix: Key prefix, e.g. a device id followed by a separator
            of_type: Restrict results to this type when given
            limit: Maximum number of results (default and cap: MAX_QUERY_SIZE)
        """
        if limit is None:
            limit = MAX_QUERY_SIZE
        else:
            limit = min(limit, MAX_QUERY_SIZE)

        queryset = self._filtered(prefix=prefix, of_type=of_type).order_by("key")
        return list(queryset[:limit])

    def insert_or_update_many(self, metas: Iterable[DeviceMeta]) -> int:
        """
        Upsert a batch of records.

        Records are written in chunks of BATCH_CHUNK_SIZE, one upsert
        statement per chunk, all inside a single transaction.

        Returns:
            Number of records written

        Raises:
            ValueError: If the batch exceeds MAX_BATCH_SIZE or repeats a key
        """
        metas_list = list(metas)

        if not metas_list:
            return 0

        if len(metas_list) > MAX_BATCH_SIZE:
            raise ValueError(
                f"Cannot upsert {len(metas_list)} device meta records at once (limit {MAX_BATCH_SIZE})"
            )

        key_counts = Counter(meta.key for meta in metas_list)
        repeated = sorted(key for key, count in key_counts.items() if count > 1)
        if repeated:
            raise ValueError(f"Batch repeats device meta keys: {repeated}")

        self._objects().bulk_create(
            [DeviceMeta.from_dict(meta.to_dict()) for meta in metas_list],
            batch_size=BATCH_CHUNK_SIZE,
            update_conflicts=True,
            unique_fields=["key"],
            update_fields=UPSERT_FIELDS,
        )
        logger.info(f"Upserted batch of {len(metas_list)} device meta records")
        return len(metas_list)


def get_store() -> DeviceMetaStore:
    """Build a store bound to the alias named in settings."""
    return DeviceMetaStore()
