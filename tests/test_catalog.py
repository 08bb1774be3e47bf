import sys
import unittest
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent))
sys.path.insert(0, str(Path(__file__).parent))

from fake_store import FakeObjectStore  # noqa: E402
from imagebucket import catalog  # noqa: E402
from imagebucket.catalog import (  # noqa: E402
    CatalogEntry,
    CatalogResult,
    FileWithNoName,
    MultipleTagsWithSameName,
    PartialUploadError,
)
from imagebucket.storage import StoredObject, Tag  # noqa: E402


def _scenario_store():
    return FakeObjectStore(
        listing=[
            StoredObject(key="x.jpg", size=100, checksum='"abc"'),
            StoredObject(key="folder/", size=0),
        ],
        tags={"x.jpg": [Tag("tags", "nature")]},
    )


class MatchesTests(unittest.TestCase):
    def test_empty_term_always_matches(self):
        self.assertTrue(catalog.matches("a.png", "", ""))
        self.assertTrue(catalog.matches("a.png", "cats", None))

    def test_term_found_in_tags(self):
        self.assertTrue(catalog.matches("a.png", "cat1,cat2", "cat2"))

    def test_term_found_in_file_name(self):
        self.assertTrue(catalog.matches("holiday/beach.png", "", "beach"))

    def test_term_missing_from_both(self):
        self.assertFalse(catalog.matches("a.png", "cat1", "dog"))

    def test_matching_is_case_sensitive(self):
        self.assertFalse(catalog.matches("Beach.png", "Nature", "beach"))
        self.assertFalse(catalog.matches("Beach.png", "Nature", "nature"))


class BuildEntryTests(unittest.TestCase):
    def test_object_without_key_is_rejected(self):
        store = FakeObjectStore()
        with self.assertRaises(FileWithNoName):
            catalog.build_entry(store, StoredObject(key=None, size=5), "")
        self.assertEqual(store.calls["get_tags"], 0)

    def test_duplicate_tags_key_is_rejected(self):
        store = FakeObjectStore(
            tags={"a.png": [Tag("tags", "one"), Tag("tags", "two")]}
        )
        with self.assertRaises(MultipleTagsWithSameName) as ctx:
            catalog.build_entry(store, StoredObject(key="a.png", size=5), "")
        self.assertEqual(ctx.exception.file_name, "a.png")

    def test_untagged_object_has_empty_tag_string(self):
        store = FakeObjectStore(tags={"a.png": [Tag("author", "sam")]})
        entry = catalog.build_entry(store, StoredObject(key="a.png", size=5), "")
        self.assertEqual(entry.tag_string, "")
        self.assertFalse(entry.hidden)
        self.assertTrue(entry.access_url)

    def test_missing_checksum_defaults_to_empty(self):
        store = FakeObjectStore()
        entry = catalog.build_entry(store, StoredObject(key="a.png", size=5), "")
        self.assertEqual(entry.checksum, "")

    def test_non_matching_entry_is_hidden_without_signing(self):
        store = FakeObjectStore(tags={"a.png": [Tag("tags", "cats")]})
        entry = catalog.build_entry(store, StoredObject(key="a.png", size=5), "dogs")
        self.assertTrue(entry.hidden)
        self.assertEqual(entry.access_url, "")
        self.assertEqual(entry.tag_string, "cats")
        self.assertEqual(store.calls["get_access_url"], 0)

    def test_serialized_entry_omits_hidden_flag(self):
        entry = CatalogEntry(
            file_name="a.png", checksum='"e"', tag_string="t", access_url="u"
        )
        self.assertEqual(
            entry.to_dict(),
            {"fileName": "a.png", "presignedUrl": "u", "tags": "t", "eTag": '"e"'},
        )


class BuildCatalogTests(unittest.TestCase):
    def test_empty_bucket_returns_empty_catalog(self):
        store = FakeObjectStore()
        result = catalog.build_catalog(store, "")
        self.assertTrue(result.ok)
        self.assertEqual(result.entries, [])
        self.assertEqual(store.calls["get_tags"], 0)

    def test_scenario_without_filter(self):
        result = catalog.build_catalog(_scenario_store(), "")
        self.assertTrue(result.ok)
        self.assertEqual([entry.file_name for entry in result.entries], ["x.jpg"])
        self.assertTrue(result.entries[0].access_url)
        self.assertEqual(result.entries[0].checksum, '"abc"')

    def test_scenario_with_non_matching_filter(self):
        store = _scenario_store()
        result = catalog.build_catalog(store, "urban")
        self.assertEqual(result.entries, [])
        self.assertEqual(store.access_url_requests, [])

    def test_scenario_with_matching_filter(self):
        result = catalog.build_catalog(_scenario_store(), "nature")
        self.assertEqual([entry.tag_string for entry in result.entries], ["nature"])

    def test_folder_markers_never_appear(self):
        store = FakeObjectStore(
            listing=[
                StoredObject(key="a/", size=0),
                StoredObject(key="b/", size=None),
                StoredObject(key="c.png", size=1),
            ]
        )
        result = catalog.build_catalog(store, "")
        self.assertEqual([entry.file_name for entry in result.entries], ["c.png"])
        self.assertEqual(store.calls["get_tags"], 1)

    def test_nameless_folder_marker_is_skipped(self):
        store = FakeObjectStore(listing=[StoredObject(key=None, size=0)])
        result = catalog.build_catalog(store, "")
        self.assertTrue(result.ok)

    def test_nameless_object_fails_whole_catalog(self):
        for term in ("", "nature", "nothing-matches"):
            with self.subTest(term=term):
                store = FakeObjectStore(
                    listing=[
                        StoredObject(key="x.jpg", size=10),
                        StoredObject(key=None, size=10),
                        StoredObject(key="y.jpg", size=10),
                    ],
                    tags={"x.jpg": [Tag("tags", "nature")]},
                )
                result = catalog.build_catalog(store, term)
                self.assertFalse(result.ok)
                self.assertIsInstance(result.error, FileWithNoName)
                self.assertEqual(result.entries, [])
                self.assertNotIn("y.jpg", store.access_url_requests)

    def test_duplicate_tags_fail_whole_catalog(self):
        store = FakeObjectStore(
            listing=[
                StoredObject(key="x.jpg", size=10),
                StoredObject(key="y.jpg", size=10),
            ],
            tags={"y.jpg": [Tag("tags", "a"), Tag("other", "b"), Tag("tags", "c")]},
        )
        result = catalog.build_catalog(store, "")
        self.assertIsInstance(result.error, MultipleTagsWithSameName)
        self.assertEqual(result.entries, [])
        with self.assertRaises(MultipleTagsWithSameName):
            result.unwrap()

    def test_filtered_entries_are_excluded_and_never_signed(self):
        store = FakeObjectStore(
            listing=[
                StoredObject(key="cat.png", size=1),
                StoredObject(key="dog.png", size=1),
                StoredObject(key="bird.png", size=1),
            ],
            tags={
                "cat.png": [Tag("tags", "pets")],
                "dog.png": [Tag("tags", "pets,loud")],
                "bird.png": [Tag("tags", "wild")],
            },
        )
        result = catalog.build_catalog(store, "pets")
        self.assertEqual(
            [entry.file_name for entry in result.entries], ["cat.png", "dog.png"]
        )
        self.assertEqual(store.calls["get_access_url"], 2)
        self.assertEqual(store.access_url_requests, ["cat.png", "dog.png"])

    def test_listing_order_is_preserved(self):
        names = ["m.png", "a.png", "z.png", "b.png"]
        store = FakeObjectStore(
            listing=[StoredObject(key=name, size=3) for name in names]
        )
        result = catalog.build_catalog(store)
        self.assertEqual([entry.file_name for entry in result.entries], names)

    def test_repeated_unfiltered_catalogs_agree(self):
        store = FakeObjectStore(
            listing=[
                StoredObject(key="a.png", size=3),
                StoredObject(key="b.png", size=3),
            ],
            tags={"a.png": [Tag("tags", "x")], "b.png": [Tag("tags", "y")]},
        )
        first = catalog.build_catalog(store, "").unwrap()
        second = catalog.build_catalog(store, "").unwrap()
        self.assertEqual(
            [(entry.file_name, entry.tag_string) for entry in first],
            [(entry.file_name, entry.tag_string) for entry in second],
        )
        self.assertNotEqual(first[0].access_url, second[0].access_url)

    def test_result_unwrap_returns_entries(self):
        entries = [CatalogEntry(file_name="a.png")]
        self.assertIs(CatalogResult(entries=entries).unwrap(), entries)


class UploadTests(unittest.TestCase):
    def test_upload_then_filter_round_trip(self):
        store = FakeObjectStore()
        catalog.upload(store, "a.png", b"\x89PNG data", "cat1,cat2")

        entries = catalog.build_catalog(store, "cat1").unwrap()
        self.assertEqual(len(entries), 1)
        self.assertEqual(entries[0].file_name, "a.png")
        self.assertEqual(entries[0].to_dict()["tags"], "cat1,cat2")
        self.assertEqual(store.get_object("a.png"), b"\x89PNG data")

    def test_upload_writes_object_before_tags(self):
        store = FakeObjectStore()
        order = []
        original_put_object = store.put_object
        original_put_tags = store.put_tags

        def put_object(file_name, data):
            order.append("object")
            original_put_object(file_name, data)

        def put_tags(file_name, pairs):
            order.append("tags")
            original_put_tags(file_name, pairs)

        store.put_object = put_object
        store.put_tags = put_tags
        catalog.upload(store, "a.png", b"1", "t")
        self.assertEqual(order, ["object", "tags"])

    def test_upload_replaces_existing_tag_set(self):
        store = FakeObjectStore(
            tags={"a.png": [Tag("tags", "old"), Tag("author", "sam")]}
        )
        catalog.upload(store, "a.png", b"new", "fresh")
        self.assertEqual(store.tags["a.png"], [Tag("tags", "fresh")])

    def test_upload_overwrites_same_name(self):
        store = FakeObjectStore()
        catalog.upload(store, "a.png", b"first", "one")
        catalog.upload(store, "a.png", b"second", "two")
        entries = catalog.build_catalog(store).unwrap()
        self.assertEqual(len(entries), 1)
        self.assertEqual(entries[0].tag_string, "two")
        self.assertEqual(store.bodies["a.png"], b"second")

    def test_tag_failure_leaves_object_untagged(self):
        store = FakeObjectStore()
        store.failing.add("put_tags")
        with self.assertRaises(PartialUploadError) as ctx:
            catalog.upload(store, "a.png", b"data", "t")
        self.assertEqual(ctx.exception.file_name, "a.png")
        self.assertEqual(store.bodies["a.png"], b"data")
        self.assertNotIn("a.png", store.tags)
        self.assertEqual(store.calls["put_tags"], 1)

    def test_untagged_upload_log_escapes_newlines_in_name(self):
        store = FakeObjectStore()
        store.failing.add("put_tags")
        with self.assertLogs("imagebucket.catalog", level="ERROR") as cm:
            with self.assertRaises(PartialUploadError):
                catalog.upload(store, "a.png\nERROR forged entry", b"data", "t")
        self.assertTrue(cm.records)
        for record in cm.records:
            self.assertNotIn("\n", record.getMessage())

    def test_aborted_catalog_log_escapes_newlines_in_name(self):
        store = FakeObjectStore(
            listing=[StoredObject(key="b.png\nERROR forged", size=3)],
            tags={"b.png\nERROR forged": [Tag("tags", "a"), Tag("tags", "b")]},
        )
        with self.assertLogs("imagebucket.catalog", level="WARNING") as cm:
            result = catalog.build_catalog(store)
        self.assertIsInstance(result.error, MultipleTagsWithSameName)
        self.assertIn("b.png\\nERROR forged", cm.records[0].getMessage())
        self.assertNotIn("\n", cm.records[0].getMessage())

    def test_object_failure_skips_tag_write(self):
        store = FakeObjectStore()
        store.failing.add("put_object")
        with self.assertRaises(catalog.ObjectStoreError) as ctx:
            catalog.upload(store, "a.png", b"data", "t")
        self.assertNotIsInstance(ctx.exception, PartialUploadError)
        self.assertEqual(store.calls["put_tags"], 0)


if __name__ == "__main__":
    unittest.main()
