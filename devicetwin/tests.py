import threading
from unittest import mock

from django.core.exceptions import FieldDoesNotExist
from django.db import IntegrityError, OperationalError, connections, transaction
from django.db.models import QuerySet
from django.test import SimpleTestCase, TestCase, TransactionTestCase, override_settings

from devicetwin import services
from devicetwin.errors import is_non_unique_name_error
from devicetwin.models import DeviceMeta
from devicetwin.services import DeviceMetaStore, device_meta_filter, get_store


def make_meta(key="k1", of_type="t1", value="v1") -> DeviceMeta:
    return DeviceMeta(key=key, type=of_type, value=value)


class DeviceMetaStoreWriteTests(TestCase):
    def setUp(self):
        self.store = DeviceMetaStore()

    def test_save_then_query_returns_saved_record(self):
        self.store.save_device_meta(make_meta())

        results = self.store.query_device_meta("k1", "t1")
        self.assertEqual(len(results), 1)
        self.assertEqual(results[0].to_dict(), {"key": "k1", "type": "t1", "value": "v1"})

    def test_second_save_with_same_key_fails_as_non_unique(self):
        self.store.save_device_meta(make_meta())

        with self.assertRaises(IntegrityError) as ctx:
            with transaction.atomic():
                self.store.save_device_meta(make_meta(value="other"))

        self.assertTrue(is_non_unique_name_error(ctx.exception))
        self.assertEqual(DeviceMeta.objects.get(key="k1").value, "v1")

    def test_saved_record_can_be_reused_for_later_writes(self):
        meta = make_meta()
        self.store.save_device_meta(meta)

        meta.value = "v2"
        with self.assertRaises(IntegrityError):
            with transaction.atomic():
                self.store.save_device_meta(meta)
        self.store.insert_or_update(meta)

        self.assertEqual(DeviceMeta.objects.get(key="k1").value, "v2")

    def test_delete_removes_record(self):
        self.store.save_device_meta(make_meta())

        deleted = self.store.delete_device_meta_by_key("k1")

        self.assertEqual(deleted, 1)
        self.assertFalse(DeviceMeta.objects.filter(key="k1").exists())

    def test_delete_missing_key_is_not_an_error(self):
        self.assertEqual(self.store.delete_device_meta_by_key("missing"), 0)

    def test_update_overwrites_all_fields(self):
        self.store.save_device_meta(make_meta())

        updated = self.store.update_device_meta(make_meta(of_type="t2", value="v2"))

        self.assertEqual(updated, 1)
        entry = DeviceMeta.objects.get(key="k1")
        self.assertEqual((entry.type, entry.value), ("t2", "v2"))

    def test_update_missing_key_does_not_insert(self):
        updated = self.store.update_device_meta(make_meta(key="missing"))

        self.assertEqual(updated, 0)
        self.assertFalse(DeviceMeta.objects.filter(key="missing").exists())

    def test_insert_or_update_creates_then_overwrites(self):
        self.store.insert_or_update(make_meta(value="v1"))
        self.store.insert_or_update(make_meta(value="v2"))

        self.assertEqual(DeviceMeta.objects.filter(key="k1").count(), 1)
        self.assertEqual(DeviceMeta.objects.get(key="k1").value, "v2")

    def test_insert_or_update_is_a_single_statement(self):
        self.store.save_device_meta(make_meta())

        with self.assertNumQueries(1):
            self.store.insert_or_update(make_meta(of_type="t2", value="v2"))

        entry = DeviceMeta.objects.get(key="k1")
        self.assertEqual((entry.type, entry.value), ("t2", "v2"))

    def test_update_field_changes_one_column(self):
        self.store.save_device_meta(make_meta())

        updated = self.store.update_device_meta_field("k1", "value", "v2")

        self.assertEqual(updated, 1)
        entry = DeviceMeta.objects.get(key="k1")
        self.assertEqual((entry.type, entry.value), ("t1", "v2"))

    def test_update_field_on_missing_key_updates_nothing(self):
        self.assertEqual(self.store.update_device_meta_field("missing", "value", "v2"), 0)

    def test_update_unknown_field_raises(self):
        self.store.save_device_meta(make_meta())

        with self.assertRaises(FieldDoesNotExist):
            self.store.update_device_meta_field("k1", "colour", "red")

    def test_update_fields_changes_only_named_fields(self):
        self.store.save_device_meta(make_meta())

        updated = self.store.update_device_meta_fields("k1", {"value": "v2"})

        self.assertEqual(updated, 1)
        entry = DeviceMeta.objects.get(key="k1")
        self.assertEqual((entry.type, entry.value), ("t1", "v2"))

    def test_update_fields_sets_several_columns(self):
        self.store.save_device_meta(make_meta())

        self.store.update_device_meta_fields("k1", {"value": "v2", "type": "t2"})

        entry = DeviceMeta.objects.get(key="k1")
        self.assertEqual((entry.type, entry.value), ("t2", "v2"))

    def test_update_field_rejects_key_column(self):
        self.store.save_device_meta(make_meta())

        with self.assertNumQueries(0):
            with self.assertRaises(ValueError):
                self.store.update_device_meta_field("k1", "key", "k2")
            with self.assertRaises(ValueError):
                self.store.update_device_meta_field("k1", "pk", "k2")

        self.assertTrue(DeviceMeta.objects.filter(key="k1").exists())
        self.assertFalse(DeviceMeta.objects.filter(key="k2").exists())

    def test_update_fields_rejects_key_column(self):
        self.store.save_device_meta(make_meta())

        with self.assertRaises(ValueError):
            self.store.update_device_meta_fields("k1", {"value": "v2", "key": "k2"})

        entry = DeviceMeta.objects.get(key="k1")
        self.assertEqual(entry.value, "v1")

    def test_update_fields_with_empty_mapping_is_a_no_op(self):
        self.store.save_device_meta(make_meta())

        with self.assertNumQueries(0):
            self.assertEqual(self.store.update_device_meta_fields("k1", {}), 0)
            self.assertEqual(self.store.update_device_meta_fields("k1", None), 0)

        self.assertEqual(DeviceMeta.objects.get(key="k1").value, "v1")


class DeviceMetaStoreQueryTests(TestCase):
    def setUp(self):
        self.store = DeviceMetaStore()
        DeviceMeta.objects.create(key="dev1/state", type="twin", value="on")
        DeviceMeta.objects.create(key="dev1/firmware", type="attr", value="1.2")
        DeviceMeta.objects.create(key="dev10/state", type="twin", value="off")
        DeviceMeta.objects.create(key="dev2/state", type="twin", value="on")

    def test_query_filters_on_key_and_type(self):
        results = self.store.query_device_meta("dev1/state", "twin")
        self.assertEqual([meta.value for meta in results], ["on"])

    def test_query_with_other_type_returns_empty_list(self):
        self.assertEqual(self.store.query_device_meta("dev1/state", "attr"), [])

    def test_query_all_shares_query_filter(self):
        self.assertEqual(
            [meta.to_dict() for meta in self.store.query_all_device_meta("dev1/firmware", "attr")],
            [{"key": "dev1/firmware", "type": "attr", "value": "1.2"}],
        )
        self.assertEqual(self.store.query_all_device_meta("dev1/firmware", "twin"), [])

    def test_query_results_are_snapshots(self):
        results = self.store.query_device_meta("dev1/state", "twin")

        self.store.update_device_meta_field("dev1/state", "value", "off")

        self.assertEqual(results[0].value, "on")
        self.assertEqual(self.store.query_device_meta("dev1/state", "twin")[0].value, "off")

    def test_prefix_query_returns_sorted_matches(self):
        results = self.store.query_device_meta_by_prefix("dev1/")
        self.assertEqual([meta.key for meta in results], ["dev1/firmware", "dev1/state"])

    def test_prefix_query_is_case_sensitive(self):
        DeviceMeta.objects.create(key="DEV1/state", type="twin", value="on")

        results = self.store.query_device_meta_by_prefix("dev1/")

        self.assertEqual([meta.key for meta in results], ["dev1/firmware", "dev1/state"])
        self.assertEqual(
            [meta.key for meta in self.store.query_device_meta_by_prefix("DEV1/")],
            ["DEV1/state"],
        )

    def test_prefix_query_does_not_treat_wildcards_specially(self):
        DeviceMeta.objects.create(key="dev%/state", type="twin", value="on")

        results = self.store.query_device_meta_by_prefix("dev%")

        self.assertEqual([meta.key for meta in results], ["dev%/state"])

    def test_prefix_query_filters_on_type(self):
        results = self.store.query_device_meta_by_prefix("dev1", of_type="twin")
        self.assertEqual([meta.key for meta in results], ["dev1/state", "dev10/state"])

    def test_prefix_query_respects_limit(self):
        results = self.store.query_device_meta_by_prefix("dev", limit=2)
        self.assertEqual([meta.key for meta in results], ["dev1/firmware", "dev1/state"])

    def test_prefix_query_limit_is_capped(self):
        with mock.patch.object(services, "MAX_QUERY_SIZE", 1):
            results = self.store.query_device_meta_by_prefix("dev", limit=50)
        self.assertEqual(len(results), 1)


class DeviceMetaBatchUpsertTests(TestCase):
    def setUp(self):
        self.store = DeviceMetaStore()

    def test_batch_upsert_creates_and_updates(self):
        DeviceMeta.objects.create(key="alpha", type="twin", value="old")

        written = self.store.insert_or_update_many(
            [make_meta("alpha", "twin", "new"), make_meta("beta", "attr", "2")]
        )

        self.assertEqual(written, 2)
        self.assertEqual(DeviceMeta.objects.get(key="alpha").value, "new")
        self.assertEqual(DeviceMeta.objects.get(key="beta").type, "attr")

    def test_batch_upsert_writes_in_chunks(self):
        metas = [make_meta(f"key-{i}", "twin", str(i)) for i in range(5)]

        with mock.patch.object(services, "BATCH_CHUNK_SIZE", 2):
            with self.assertNumQueries(3):
                self.store.insert_or_update_many(metas)

        self.assertEqual(DeviceMeta.objects.count(), 5)

    def test_empty_batch_is_a_no_op(self):
        with self.assertNumQueries(0):
            self.assertEqual(self.store.insert_or_update_many([]), 0)

    def test_batch_with_duplicate_keys_is_rejected(self):
        with self.assertNumQueries(0):
            with self.assertRaises(ValueError):
                self.store.insert_or_update_many([make_meta(), make_meta(value="v2")])

    def test_oversize_batch_is_rejected(self):
        metas = [make_meta(f"key-{i}") for i in range(4)]

        with mock.patch.object(services, "MAX_BATCH_SIZE", 3):
            with self.assertRaises(ValueError):
                self.store.insert_or_update_many(metas)

        self.assertEqual(DeviceMeta.objects.count(), 0)


class DeviceMetaConcurrentUpsertTests(TransactionTestCase):
    """Upserts racing on one key from several threads, each on its own connection."""

    writers = 4
    rounds = 10

    def _upsert_repeatedly(self, writer, barrier, errors):
        store = DeviceMetaStore()
        try:
            barrier.wait()
            for round_number in range(self.rounds):
                store.insert_or_update(make_meta(value=f"w{writer}-{round_number}"))
        except Exception as exc:
            errors.append(exc)
        finally:
            connections.close_all()

    def test_racing_upserts_leave_one_record(self):
        barrier = threading.Barrier(self.writers, timeout=10)
        errors = []
        threads = [
            threading.Thread(target=self._upsert_repeatedly, args=(writer, barrier, errors))
            for writer in range(self.writers)
        ]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        self.assertEqual(errors, [])
        self.assertEqual(DeviceMeta.objects.filter(key="k1").count(), 1)
        final_value = DeviceMeta.objects.get(key="k1").value
        self.assertIn(final_value, {f"w{writer}-{self.rounds - 1}" for writer in range(self.writers)})


class DeviceMetaStoreFailureTests(TestCase):
    """Backend failures reach the caller as the exception the ORM raised."""

    def setUp(self):
        self.store = DeviceMetaStore()
        self.error = OperationalError("unable to open database file")

    def test_save_failure_propagates_unchanged(self):
        with mock.patch.object(QuerySet, "create", side_effect=self.error):
            with self.assertRaises(OperationalError) as ctx:
                self.store.save_device_meta(make_meta())

        self.assertIs(ctx.exception, self.error)
        self.assertFalse(is_non_unique_name_error(ctx.exception))

    def test_delete_failure_propagates_unchanged(self):
        with mock.patch.object(QuerySet, "delete", side_effect=self.error):
            with self.assertRaises(OperationalError) as ctx:
                self.store.delete_device_meta_by_key("k1")
        self.assertIs(ctx.exception, self.error)

    def test_update_failure_propagates_unchanged(self):
        with mock.patch.object(QuerySet, "update", side_effect=self.error):
            with self.assertRaises(OperationalError) as ctx:
                self.store.update_device_meta(make_meta())
            with self.assertRaises(OperationalError):
                self.store.update_device_meta_field("k1", "value", "v2")
            with self.assertRaises(OperationalError):
                self.store.update_device_meta_fields("k1", {"value": "v2"})
        self.assertIs(ctx.exception, self.error)

    def test_upsert_failure_propagates_unchanged(self):
        with mock.patch.object(QuerySet, "bulk_create", side_effect=self.error):
            with self.assertRaises(OperationalError) as ctx:
                self.store.insert_or_update(make_meta())
        self.assertIs(ctx.exception, self.error)

    def test_query_failure_propagates_unchanged(self):
        with mock.patch.object(QuerySet, "_fetch_all", side_effect=self.error):
            with self.assertRaises(OperationalError) as ctx:
                self.store.query_device_meta("k1", "t1")
        self.assertIs(ctx.exception, self.error)


class DeviceMetaStoreConfigTests(SimpleTestCase):
    def test_explicit_alias_is_used(self):
        self.assertEqual(DeviceMetaStore(using="replica").using, "replica")

    @override_settings(DEVICE_META_DB_ALIAS="twin")
    def test_default_alias_comes_from_settings(self):
        self.assertEqual(get_store().using, "twin")

    def test_filter_without_arguments_matches_everything(self):
        self.assertFalse(device_meta_filter().children)

    def test_filter_combines_conditions(self):
        condition = device_meta_filter(key="k1", of_type="t1")
        self.assertEqual(condition.children, [("key", "k1"), ("type", "t1")])

    def test_record_round_trips_through_dict(self):
        meta = DeviceMeta.from_dict({"key": "k1", "type": "t1", "value": "v1"})
        self.assertEqual(meta.to_dict(), {"key": "k1", "type": "t1", "value": "v1"})
        self.assertEqual(meta.field_values(), {"value": "v1", "type": "t1"})


class NonUniqueNameErrorTests(SimpleTestCase):
    def test_suffix_are_not_unique(self):
        self.assertTrue(is_non_unique_name_error(Exception("The fields are not unique")))

    def test_contains_unique_constraint_failed(self):
        self.assertTrue(is_non_unique_name_error(Exception("Failed-UNIQUE constraint failed")))

    def test_contains_constraint_failed(self):
        self.assertTrue(is_non_unique_name_error(Exception("The input constraint failed")))

    def test_sqlite_integrity_error(self):
        err = IntegrityError("UNIQUE constraint failed: device_meta.key")
        self.assertTrue(is_non_unique_name_error(err))

    def test_other_error(self):
        self.assertFalse(is_non_unique_name_error(Exception("Failed")))

    def test_none(self):
        self.assertFalse(is_non_unique_name_error(None))

    def test_unprintable_error(self):
        class Unprintable(Exception):
            def __str__(self):
                raise RuntimeError("no message")

        self.assertFalse(is_non_unique_name_error(Unprintable()))
