"""Tests for Entity: schema parsing, DDL, the write protocol and reads."""

from __future__ import annotations

from datetime import datetime, timezone

import pytest

from docstore import Entity, Record
from docstore.attribute import Attribute
from docstore.errors import (
    ArgumentError,
    InternalError,
    NotFoundError,
    SchemaError,
    TooManyFoundError,
    ValidationError,
)

from tests.conftest import AUTHORED_BOOK_SCHEME, BOOK_SCHEME, PERSON_SCHEME

SIMPLE_RECORD = {"name": "Lorem ipsum", "yr": 1234}
SIMPLE_RECORD_2 = {"name": "Dolor sit amet", "yr": 4321}


class TestSchema:
    def test_attr_lookup(self):
        book = Entity("book", BOOK_SCHEME)
        assert book.attr("yr") == Attribute({"name": "yr", "type": "int", "ind": True})
        assert book.attr("foo") is None
        assert book.attr_or_fail("yr").name == "yr"
        with pytest.raises(NotFoundError):
            book.attr_or_fail("foo")

    def test_rel_lookup(self):
        book = Entity("book", AUTHORED_BOOK_SCHEME)
        assert book.rel("author").target == "person"
        assert book.rel("foo") is None
        with pytest.raises(NotFoundError):
            book.rel_or_fail("foo")

    def test_default_header_is_name(self):
        book = Entity("book", BOOK_SCHEME)
        assert [a.name for a in book.header] == ["name"]
        assert book.title == "book"

    def test_missing_default_header(self):
        with pytest.raises(SchemaError, match="must include attribute 'name'"):
            Entity("file", {"attr": [{"name": "filename", "type": "str", "ind": True}]})

    def test_header_must_reference_attributes(self):
        with pytest.raises(SchemaError, match="doesn't exist"):
            Entity("file", {"attr": [{"name": "filename", "type": "str"}], "header": ["path"]})

    def test_empty_header(self):
        with pytest.raises(SchemaError):
            Entity("file", {"attr": [{"name": "name", "type": "str"}], "header": []})

    def test_duplicate_attribute(self):
        with pytest.raises(SchemaError, match="duplicate attribute"):
            Entity(
                "book",
                {"attr": [{"name": "name", "type": "str"}, {"name": "name", "type": "int"}]},
            )

    def test_relation_clashing_with_attribute(self):
        with pytest.raises(SchemaError, match="clashes"):
            Entity(
                "book",
                {
                    "attr": [{"name": "name", "type": "str"}],
                    "rel": [{"name": "name", "type": "01", "target": "person"}],
                },
            )

    @pytest.mark.parametrize("name", ["bad name", "_book", "1book"])
    def test_invalid_entity_name(self, name):
        with pytest.raises(SchemaError):
            Entity(name, BOOK_SCHEME)

    def test_unknown_definition_key(self):
        with pytest.raises(SchemaError):
            Entity("book", {**BOOK_SCHEME, "attrs": []})

    def test_set_with_too_many_values(self):
        values = [f"v{i:05d}" for i in range(1, 66)]
        with pytest.raises(SchemaError):
            Entity(
                "big_set_ent",
                {
                    "attr": [
                        {"name": "name", "type": "str", "ind": True},
                        {"name": "items", "type": "set", "values": values, "ind": True},
                    ]
                },
            )

    def test_to_definition_round_trip(self):
        assert Entity("book", BOOK_SCHEME).to_definition() == BOOK_SCHEME
        assert Entity("person", PERSON_SCHEME).to_definition() == PERSON_SCHEME
        assert Entity("book", AUTHORED_BOOK_SCHEME).to_definition() == AUTHORED_BOOK_SCHEME

    def test_unbound_entity(self):
        with pytest.raises(InternalError):
            Entity("book", BOOK_SCHEME).get(1)


class TestDdl:
    def test_schema_ddl(self):
        assert Entity("book", BOOK_SCHEME).schema_ddl() == [
            'CREATE TABLE "book" ("_id" INTEGER PRIMARY KEY AUTOINCREMENT, '
            '"_data" TEXT NOT NULL, "_deleted" TINYINT NOT NULL DEFAULT 0, '
            '"name" VARCHAR(100), "yr" INTEGER)',
            'CREATE INDEX "_idx_book_name" ON "book" ("name")',
            'CREATE INDEX "_idx_book_yr" ON "book" ("yr")',
        ]

    def test_unique_index(self):
        tag = Entity("tag", {"attr": [{"name": "name", "type": "str", "uniq": True}]})
        assert tag.schema_ddl()[1] == 'CREATE UNIQUE INDEX "_uniq_tag_name" ON "tag" ("name")'

    def test_foreign_key_column(self):
        article = Entity(
            "article",
            {
                "attr": [{"name": "name", "type": "str"}],
                "rel": [{"name": "source", "target": "source", "type": "1"}],
            },
        )
        create, index = article.schema_ddl()
        assert '"source" INTEGER NOT NULL' in create
        assert '"name"' not in create
        assert index == 'CREATE INDEX "_idx_article_source" ON "article" ("source")'

    def test_history_ddl(self):
        create, index = Entity("book", BOOK_SCHEME).history_ddl()
        assert create.startswith('CREATE TABLE "book_h" (hid INTEGER PRIMARY KEY AUTOINCREMENT')
        assert index == 'CREATE INDEX "_idx_book_h_id" ON "book_h" ("_id")'

    def test_table_names(self):
        book = Entity("book", AUTHORED_BOOK_SCHEME)
        assert book.table_names() == ["book", "book_h", "author"]

    def test_header_expression(self):
        assert Entity("book", BOOK_SCHEME).header_expression() == '"book"."name"'
        assert Entity("book", AUTHORED_BOOK_SCHEME).header_expression() == (
            '"book"."heading" || \' \' || "book"."yr"'
        )

    def test_non_indexed_header_reads_document(self):
        note = Entity("note", {"attr": [{"name": "name", "type": "str"}]})
        assert note.header_expression() == "json_extract(\"note\".\"_data\", '$.name')"


class TestInsertAndGet:
    def test_insert_simple_record(self, engine):
        book = engine.entity_create("book", BOOK_SCHEME)
        assert book.insert(SIMPLE_RECORD) == 1
        assert book.count() == 1

    def test_get(self, engine):
        book = engine.entity_create("book", BOOK_SCHEME)
        book.insert(SIMPLE_RECORD)
        rec = book.get(1)
        assert isinstance(rec, Record)
        assert rec == {"_id": 1, "_header": "Lorem ipsum", **SIMPLE_RECORD}
        assert rec.id == 1
        assert rec.header == "Lorem ipsum"

    def test_get_missing(self, engine):
        book = engine.entity_create("book", BOOK_SCHEME)
        with pytest.raises(NotFoundError):
            book.get(1)

    def test_get_invalid_id(self, engine):
        book = engine.entity_create("book", BOOK_SCHEME)
        with pytest.raises(ArgumentError):
            book.get("1")
        with pytest.raises(ArgumentError):
            book.get(True)

    def test_unknown_field(self, engine):
        book = engine.entity_create("book", BOOK_SCHEME)
        with pytest.raises(ArgumentError, match="Unknown argument 'foo'"):
            book.insert({"foo": 1234})
        assert book.count() == 0

    def test_wrong_value_type(self, engine):
        book = engine.entity_create("book", BOOK_SCHEME)
        with pytest.raises(ArgumentError):
            book.insert({"name": "x", "yr": "1999"})

    def test_synthetic_keys_dropped(self, engine):
        book = engine.entity_create("book", BOOK_SCHEME)
        book.insert({"_id": 99, "_header": "junk", **SIMPLE_RECORD})
        assert book.get(1)["name"] == "Lorem ipsum"
        with pytest.raises(NotFoundError):
            book.get(99)

    def test_none_values_dropped(self, engine):
        book = engine.entity_create("book", BOOK_SCHEME)
        book.insert({"name": "x", "yr": None})
        assert "yr" not in book.get(1)

    def test_unique_violation_rolls_back(self, engine):
        tag = engine.entity_create("tag", {"attr": [{"name": "name", "type": "str", "uniq": True}]})
        tag.insert({"name": "a"})
        with pytest.raises(ValidationError):
            tag.insert({"name": "a"})
        assert tag.count() == 1
        assert engine.repo.scalar('SELECT COUNT(*) FROM "tag_h"') == 1

    def test_non_indexed_header(self, engine):
        note = engine.entity_create(
            "note", {"attr": [{"name": "name", "type": "str"}, {"name": "n", "type": "int"}]}
        )
        note.insert({"name": "b", "n": 1})
        note.insert({"name": "a", "n": 2})
        assert note.get(1).header == "b"
        assert note.list().map(lambda r: r.header) == ["a", "b"]

    def test_bool_attribute(self, engine):
        flag = engine.entity_create(
            "flag",
            {
                "attr": [
                    {"name": "name", "type": "str", "ind": True},
                    {"name": "active", "type": "bool", "ind": True},
                ]
            },
        )
        flag.insert({"name": "a", "active": True})
        flag.insert({"name": "b", "active": False})
        assert flag.count(where={"active": True}) == 1
        assert flag.get(1)["active"] is True


class TestMandatory:
    def test_missing_relation(self, articles):
        with pytest.raises(ValidationError):
            articles.insert({"name": "Unbound article"})
        assert articles.count() == 3

    def test_errors_are_aggregated(self, engine):
        item = engine.entity_create(
            "item",
            {
                "attr": [
                    {"name": "name", "type": "str", "mand": True},
                    {"name": "code", "type": "str", "mand": True},
                    {"name": "yr", "type": "int"},
                ]
            },
        )
        with pytest.raises(ValidationError) as exc_info:
            item.insert({"code": "", "yr": 1})
        errors = exc_info.value.errors
        assert len(errors) == 2
        assert "Mandatory attribute 'name' is missing" in errors
        assert "Mandatory attribute 'code' is empty" in errors
        assert item.count() == 0

    def test_mandatory_multi_relation(self, engine):
        engine.entity_create("person", PERSON_SCHEME)
        book = engine.entity_create(
            "book",
            {
                "attr": [{"name": "name", "type": "str"}],
                "rel": [{"name": "author", "target": "person", "type": "1n"}],
            },
        )
        with pytest.raises(ValidationError, match="Mandatory relation 'author'"):
            book.insert({"name": "x", "author": []})


class TestSingleRelation:
    def test_get_resolves_stub(self, articles):
        assert articles.get(1) == {
            "_id": 1,
            "_header": "Sourced article",
            "name": "Sourced article",
            "comm": "Blah",
            "source": {"_id": 1, "_header": "Source"},
        }

    def test_accepts_stub_and_singleton_list(self, articles):
        a = articles.insert({"name": "Stubbed", "source": {"_id": 2, "_header": "Source 2"}})
        b = articles.insert({"name": "Listed", "source": [2]})
        assert articles.get(a)["source"] == {"_id": 2, "_header": "Source 2"}
        assert articles.get(b)["source"] == {"_id": 2, "_header": "Source 2"}

    def test_rejects_multiple_targets(self, articles):
        with pytest.raises(ArgumentError):
            articles.insert({"name": "Too many", "source": [1, 2]})

    def test_back_relations(self, engine, articles):
        source = engine.entity("source")
        assert source.back_relations() == [articles.rel("source")]
        assert articles.back_relations() == []


class TestMultiRelation:
    def test_get_resolves_stubs_in_order(self, authored):
        authored.insert({"heading": "About foo", "yr": 2000, "author": [1, 2]})
        rec = authored.get(1)
        assert rec["_header"] == "About foo 2000"
        assert rec["author"] == [
            {"_id": 1, "_header": "Smith John"},
            {"_id": 2, "_header": "Allen Bill"},
        ]

    def test_duplicate_ids_removed(self, authored):
        authored.insert({"heading": "Dup", "yr": 1, "author": [2, 2, {"_id": 1}]})
        assert [s["_id"] for s in authored.get(1)["author"]] == [2, 1]
        assert authored.count(where={"author": 2}) == 1

    def test_equivalent_forms_make_no_history(self, authored):
        authored.insert({"heading": "Anonymous book", "yr": 1})
        assert authored.update(1, {"heading": "Anonymous book", "yr": 1}) is False
        assert authored.update(1, {"heading": "Anonymous book", "yr": 1, "author": None}) is False
        assert authored.update(1, {"heading": "Anonymous book", "yr": 1, "author": []}) is False
        assert len(authored.history_list(1)) == 1

    @pytest.mark.parametrize("value", ["foo", {"_id": "foo"}, [{"foo": "bar"}], [{"_id": "foo"}]])
    def test_weird_values(self, authored, value):
        authored.insert({"heading": "Anonymous book", "yr": 1})
        with pytest.raises(ArgumentError):
            authored.update(1, {"heading": "Anonymous book", "yr": 1, "author": value})

    def test_update_replaces_links(self, authored):
        authored.insert({"heading": "Book #2", "yr": 1, "author": [1]})
        assert authored.update(1, {"heading": "Book #2", "yr": 1, "author": [2]}) is True
        assert authored.count(where={"author": 1}) == 0
        assert authored.count(where={"author": 2}) == 1
        assert authored.update(1, {"heading": "Book #2", "yr": 1, "author": [1, 2]}) is True
        assert authored.repo.scalar('SELECT COUNT(*) FROM "author"') == 2


class TestSelfReference:
    NODE_SCHEME = {
        "attr": [{"name": "name", "type": "str", "ind": True}],
        "rel": [
            {"name": "parent", "target": "node", "type": "01"},
            {"name": "peer", "target": "node", "type": "0n"},
        ],
    }

    def test_self_referencing_relations(self, engine):
        node = engine.entity_create("node", self.NODE_SCHEME)
        node.insert({"name": "root"})
        node.insert({"name": "child", "parent": 1, "peer": [1]})

        rec = node.get(2)
        assert rec["parent"] == {"_id": 1, "_header": "root"}
        assert rec["peer"] == [{"_id": 1, "_header": "root"}]
        assert node.count(where={"parent": 1}) == 1
        assert node.count(where={"peer": 1}) == 1
        assert engine.repo.query('SELECT * FROM "peer"') == [{"node_1": 2, "node_2": 1}]

    def test_resolve_join_uses_relation_alias(self, engine):
        node = engine.entity_create(
            "node",
            {
                "attr": [{"name": "name", "type": "str", "ind": True}],
                "rel": [{"name": "parent", "target": "node", "type": "01"}],
            },
        )
        node.insert({"name": "root"})
        node.insert({"name": "child", "parent": 1})
        rows = node.list(
            fields=["node._id", "parent.name AS parent_name"],
            where={"parent": 1},
            resolve=True,
        )
        assert rows.map(lambda r: r["parent_name"]) == ["root"]


class TestUpdate:
    def test_modify(self, engine):
        book = engine.entity_create("book", BOOK_SCHEME)
        book.insert(SIMPLE_RECORD)
        assert book.update(1, SIMPLE_RECORD_2) is True
        rec = book.get(1)
        assert rec["name"] == SIMPLE_RECORD_2["name"]
        assert rec["yr"] == SIMPLE_RECORD_2["yr"]
        assert book.count(where={"name": SIMPLE_RECORD["name"]}) == 0

    def test_same_record_twice(self, engine):
        book = engine.entity_create("book", BOOK_SCHEME)
        book.insert(SIMPLE_RECORD)
        book.update(1, SIMPLE_RECORD_2)
        assert book.update(1, SIMPLE_RECORD_2) is False
        assert len(book.history_list(1)) == 2

    def test_update_with_get_result(self, articles):
        assert articles.update(1, articles.get(1)) is False
        assert len(articles.history_list(1)) == 1

    def test_key_order_does_not_matter(self, engine):
        book = engine.entity_create("book", BOOK_SCHEME)
        book.insert({"name": "x", "yr": 1})
        assert book.update(1, {"yr": 1, "name": "x"}) is False

    def test_missing(self, engine):
        book = engine.entity_create("book", BOOK_SCHEME)
        with pytest.raises(NotFoundError):
            book.update(1, SIMPLE_RECORD)

    def test_validation_leaves_row_untouched(self, articles):
        with pytest.raises(ValidationError):
            articles.update(1, {"name": "No source"})
        assert articles.get(1)["name"] == "Sourced article"


class TestDelete:
    def test_soft_delete(self, books):
        with pytest.raises(NotFoundError):
            books.get(6)
        assert books.count() == 5
        assert books.count(deleted=True) == 6

    def test_delete_twice(self, books):
        with pytest.raises(NotFoundError):
            books.delete(6)

    def test_update_deleted(self, books):
        with pytest.raises(NotFoundError):
            books.update(6, {"name": "Foxtrot", "yr": 2001})

    def test_history_kept(self, books):
        assert len(books.history_list(6)) == 1


class TestHistory:
    def test_versions(self, engine):
        book = engine.entity_create("book", BOOK_SCHEME)
        book.insert(SIMPLE_RECORD)
        book.update(1, SIMPLE_RECORD_2)
        hist = book.history_list(1)
        assert len(hist) == 2
        assert hist.map(lambda h: h["hid"]) == [1, 2]

    def test_paged(self, engine):
        book = engine.entity_create("book", BOOK_SCHEME)
        book.insert(SIMPLE_RECORD)
        book.update(1, SIMPLE_RECORD_2)
        hist = book.history_list(1, page=1, per_page=1)
        assert len(hist) == 1
        assert hist.total_count == 2
        assert hist.total_pages == 2

    def test_get_version(self, engine):
        book = engine.entity_create("book", BOOK_SCHEME)
        book.insert(SIMPLE_RECORD)
        book.update(1, SIMPLE_RECORD_2)
        old = book.history_get(1)
        assert old["name"] == SIMPLE_RECORD["name"]
        assert old["yr"] == SIMPLE_RECORD["yr"]
        assert old["_id"] == 1
        assert old.header == SIMPLE_RECORD["name"]
        assert isinstance(old["_ts"], datetime)

    def test_get_missing_version(self, engine):
        book = engine.entity_create("book", BOOK_SCHEME)
        with pytest.raises(NotFoundError):
            book.history_get(1)

    def test_user_and_time(self, engine):
        book = engine.entity_create("book", BOOK_SCHEME)
        when = datetime.fromtimestamp(1000000000, tz=timezone.utc)
        book.insert(SIMPLE_RECORD, user=1234, timestamp=when)
        hist = book.history_list(1)
        assert len(hist) == 1
        entry = hist.first()
        assert entry["user_id"] == 1234
        assert entry["ts"] == 1000000000

        version = book.history_get(entry["hid"])
        assert version["_user"] == 1234
        assert version["_ts"] == when

    def test_invalid_user(self, engine):
        book = engine.entity_create("book", BOOK_SCHEME)
        with pytest.raises(ArgumentError):
            book.insert(SIMPLE_RECORD, user="bob")


class TestFindBy:
    def test_find_by(self, books):
        rec = books.find_by({"name": "Alpha"})
        assert isinstance(rec, Record)
        assert rec["yr"] == 1912
        assert books.find_by({"name": "foo"}) is None
        assert isinstance(books.find_by({}), Record)

    def test_find_by_or_fail(self, books):
        assert books.find_by_or_fail({"name": "Alpha"})["yr"] == 1912
        with pytest.raises(NotFoundError):
            books.find_by_or_fail({"name": "foo"})
        with pytest.raises(TooManyFoundError):
            books.find_by_or_fail({})

    def test_skips_deleted(self, books):
        assert books.find_by({"name": "Foxtrot"}) is None


class TestSetAttribute:
    VALUES = [f"v{i:05d}" for i in range(1, 65)]

    def test_every_single_value(self, engine):
        ent = engine.entity_create(
            "set_ent",
            {
                "attr": [
                    {"name": "name", "type": "str", "ind": True},
                    {"name": "items", "type": "set", "values": self.VALUES, "ind": True},
                ]
            },
        )
        items = ent.attr_or_fail("items")
        for i, value in enumerate(items.values):
            rec_id = ent.insert({"name": value, "items": 1 << i})
            assert items.resolve(ent.get(rec_id)["items"]) == [value]

        rows = ent.list(fields=["name", "items"])
        assert len(rows) == 64
        for rec in rows:
            assert items.resolve(rec["items"]) == [rec["name"]]
