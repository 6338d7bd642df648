import json

from products_config import Ebook, ProductCatalog


def test_file_catalog_matches_numerically_and_rereads(tmp_path):
    path = tmp_path / "ebooks.json"
    path.write_text(json.dumps({"products": [{"product_id": "632910392", "title": "Harbor", "file_name": "harbor.epub"}]}))
    catalog = ProductCatalog(path)

    assert catalog.find(632910392) == Ebook(632910392, "Harbor", "harbor.epub")
    assert catalog.find("632910392").file_name == "harbor.epub"
    assert catalog.find(1) is None

    path.write_text(json.dumps({"products": [{"product_id": 1, "file_name": "one.pdf"}]}))
    assert catalog.find(1).file_name == "one.pdf"
    assert catalog.find(632910392) is None


def test_missing_file_is_empty_catalog(tmp_path):
    assert ProductCatalog(tmp_path / "nope.json").find(1) is None


def test_incomplete_entries_are_skipped(tmp_path):
    path = tmp_path / "ebooks.json"
    path.write_text(json.dumps({"products": [{"product_id": 1}, {"file_name": "x.epub"}, {"product_id": 2, "file_name": "b.epub"}]}))

    assert [e.product_id for e in ProductCatalog(path).products()] == [2]


def test_non_numeric_lookup_is_no_match():
    catalog = ProductCatalog(products=[Ebook(1, None, "a.epub")])
    assert catalog.find(None) is None
    assert catalog.find("abc") is None
