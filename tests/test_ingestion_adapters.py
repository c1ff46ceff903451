"""Tests for the source adapters."""

import json

import pytest

from asp_catalog.core.enums import ReviewReason
from asp_catalog.core.schema import RawRecord
from asp_catalog.ingestion.adapters import (
    BaseAdapter,
    CsvFeedAdapter,
    ExtractedField,
    HtmlPageAdapter,
    JsonApiAdapter,
    get_adapter,
    get_adapter_info,
    iter_csv_rows,
    list_adapters,
    register_adapter,
)
from asp_catalog.ingestion.errors import DataQualityError
from asp_catalog.ingestion.hashing import canonical_json_bytes, compute_hash


def _record(source: str, product_id: str, body: bytes) -> RawRecord:
    return RawRecord(
        source=source,
        source_product_id=product_id,
        url=f"https://example.com/{product_id}",
        body=body,
        content_hash=compute_hash(body),
    )


class TestAdapterRegistry:
    """Tests for adapter lookup functions."""

    def test_list_adapters(self) -> None:
        assert set(list_adapters()) >= {"json_api", "html_page", "csv_feed"}

    def test_get_adapter(self) -> None:
        adapter = get_adapter("json_api", {"root": "item"})
        assert isinstance(adapter, JsonApiAdapter)
        assert adapter.root == "item"

    def test_get_unknown_adapter(self) -> None:
        assert get_adapter("nonexistent") is None
        assert get_adapter_info("nonexistent") is None

    def test_get_adapter_info(self) -> None:
        info = get_adapter_info("html_page")
        assert info == {"name": "html_page", "version": "1.0.0", "class": "HtmlPageAdapter"}

    def test_register_requires_base_adapter(self) -> None:
        with pytest.raises(TypeError):
            register_adapter("bogus", dict)  # type: ignore[arg-type]


class TestExtractedField:
    def test_confidence_range(self) -> None:
        with pytest.raises(ValueError):
            ExtractedField("title", "x", 1.5, "json")


class TestJsonApiAdapter:
    """Tests for JsonApiAdapter."""

    def test_extracts_default_fields(self) -> None:
        payload = {
            "content_id": "ssis00865",
            "title": "新人NO.1 STYLE 専属デビュー",
            "date": "2024-01-05 10:00:00",
            "volume": "120",
            "price": "1,980円",
            "affiliateURL": "ignored",
            "actress": [{"id": 1001, "name": "三上悠亜"}, {"name": "河北彩花"}, {"id": 9}],
            "genres": [{"name": "単体作品"}, "巨乳", "巨乳"],
        }
        body = json.dumps(payload, ensure_ascii=False).encode("utf-8")

        product = JsonApiAdapter().extract_product(body, _record("fanza-api", "ssis00865", body))

        assert product.get_value("product_code") == "ssis00865"
        assert product.get_value("title") == "新人NO.1 STYLE 専属デビュー"
        assert product.get_value("duration") == "120"
        assert product.get_confidence("title") == 0.95
        assert [(p.name, p.external_id, p.confidence) for p in product.performers] == [
            ("三上悠亜", "1001", 0.95),
            ("河北彩花", None, 0.9),
        ]
        assert product.tags == ["単体作品", "巨乳"]

    def test_field_map_and_root(self) -> None:
        adapter = JsonApiAdapter(
            {"root": "item", "field_map": {"title": "iteminfo.name", "performers": ["cast"]}}
        )
        body = json.dumps(
            {"item": {"iteminfo": {"name": "作品タイトル"}, "cast": "三上悠亜、河北彩花"}},
            ensure_ascii=False,
        ).encode("utf-8")

        product = adapter.extract_product(body, _record("fanza-api", "x", body))

        assert product.get_value("title") == "作品タイトル"
        assert [p.name for p in product.performers] == ["三上悠亜", "河北彩花"]

    def test_invalid_json_is_unparseable(self) -> None:
        with pytest.raises(DataQualityError) as exc_info:
            JsonApiAdapter().extract_product(b"{not json", _record("fanza-api", "x", b"{not json"))
        assert exc_info.value.reason == ReviewReason.UNPARSEABLE

    def test_non_object_is_unparseable(self) -> None:
        with pytest.raises(DataQualityError):
            JsonApiAdapter().extract_product(b"[1, 2]", _record("fanza-api", "x", b"[1, 2]"))


PRODUCT_PAGE = """
<html>
<head>
  <title>MGS動画 | SIRO-5000</title>
  <meta property="og:title" content="【初撮り】素人娘 in 渋谷">
  <meta property="og:description" content="渋谷で出会った素人娘。">
  <meta property="og:image" content="https://img.example.com/siro5000.jpg">
</head>
<body>
  <h1>素人娘 in 渋谷</h1>
  <table>
    <tr><th>出演：</th><td><a href="/a/1">三上悠亜</a> <a href="/a/2">河北彩花</a></td></tr>
    <tr><th>品番：</th><td>SIRO-5000</td></tr>
    <tr><th>配信開始日：</th><td>2024/01/05</td></tr>
    <tr><th>収録時間：</th><td>60分</td></tr>
    <tr><th>ジャンル：</th><td><a>素人</a><a>ナンパ</a></td></tr>
  </table>
</body>
</html>
"""


class TestHtmlPageAdapter:
    """Tests for HtmlPageAdapter."""

    def test_extracts_labelled_fields(self) -> None:
        body = PRODUCT_PAGE.encode("utf-8")
        product = HtmlPageAdapter().extract_product(body, _record("mgs-html", "SIRO-5000", body))

        assert product.get_value("title") == "【初撮り】素人娘 in 渋谷"
        assert product.get_confidence("title") == 0.8
        assert product.get_value("description") == "渋谷で出会った素人娘。"
        assert product.get_value("thumbnail_url") == "https://img.example.com/siro5000.jpg"
        assert product.get_value("product_code") == "SIRO-5000"
        assert product.get_value("release_date") == "2024/01/05"
        assert product.get_value("duration") == "60分"
        assert [(p.name, p.confidence, p.method) for p in product.performers] == [
            ("三上悠亜", 0.9, "label"),
            ("河北彩花", 0.9, "label"),
        ]
        assert product.tags == ["素人", "ナンパ"]

    def test_selectors_override(self) -> None:
        body = PRODUCT_PAGE.encode("utf-8")
        adapter = HtmlPageAdapter({"selectors": {"title": "h1"}, "performer_selector": "td a[href]"})

        product = adapter.extract_product(body, _record("mgs-html", "SIRO-5000", body))

        assert product.get_value("title") == "素人娘 in 渋谷"
        assert product.get_confidence("title") == 0.9
        assert [p.method for p in product.performers] == ["css_selector", "css_selector"]

    def test_free_text_performers_are_low_confidence(self) -> None:
        body = '<html><head><meta property="og:title" content="出演：つぼみ 特別作品"></head></html>'
        adapter = HtmlPageAdapter({"performer_text_pattern": r"出演：(\S+)"})

        product = adapter.extract_product(body.encode("utf-8"), _record("mgs-html", "x", b"x"))

        assert [(p.name, p.confidence) for p in product.performers] == [("つぼみ", 0.6)]

    def test_definition_list_labels(self) -> None:
        body = "<html><body><dl><dt>女優</dt><dd>つぼみ</dd><dt>発売日</dt><dd>2023-12-01</dd></dl></body></html>"
        product = HtmlPageAdapter().extract_product(body.encode("utf-8"), _record("mgs-html", "x", b"x"))

        assert [p.name for p in product.performers] == ["つぼみ"]
        assert product.get_value("release_date") == "2023-12-01"

    def test_empty_body_is_unparseable(self) -> None:
        with pytest.raises(DataQualityError) as exc_info:
            HtmlPageAdapter().extract_product(b"   ", _record("mgs-html", "x", b"x"))
        assert exc_info.value.reason == ReviewReason.UNPARSEABLE


class TestCsvFeedAdapter:
    """Tests for CsvFeedAdapter and CSV row iteration."""

    def test_iter_csv_rows_strips_bom(self) -> None:
        text = "\ufeff商品ID,品番,タイトル\n1, ABC-001 ,作品\n"
        assert list(iter_csv_rows(text)) == [{"商品ID": "1", "品番": "ABC-001", "タイトル": "作品"}]

    def test_extracts_row(self) -> None:
        row = {
            "商品ID": "1",
            "品番": "ABC-001",
            "タイトル": "作品タイトル",
            "発売日": "2024-01-05",
            "価格": "980",
            "出演者": "三上悠亜/河北彩花",
            "ジャンル": "単体作品,巨乳",
        }
        body = canonical_json_bytes(row)
        adapter = CsvFeedAdapter()

        product = adapter.extract_product(body, _record("b10f-csv", "1", body))

        assert adapter.row_key(row) == "1"
        assert product.get_value("product_code") == "ABC-001"
        assert product.get_confidence("title") == 0.9
        assert product.get_value("price") == "980"
        assert [p.name for p in product.performers] == ["三上悠亜", "河北彩花"]
        assert product.tags == ["単体作品", "巨乳"]

    def test_field_map_override(self) -> None:
        adapter = CsvFeedAdapter({"field_map": {"source_product_id": "sku"}})
        assert adapter.row_key({"sku": "77", "product_id": "1"}) == "77"
        assert adapter.row_key({"product_id": "1"}) is None


class TestBaseAdapter:
    def test_validate_product_warnings(self) -> None:
        body = json.dumps({"price": "-5"}).encode("utf-8")
        product = JsonApiAdapter().extract_product(body, _record("fanza-api", "x", body))

        warnings = JsonApiAdapter().validate_product(product)

        assert "Missing title" in warnings
        assert any("Invalid price" in w for w in warnings)

    def test_is_abstract(self) -> None:
        with pytest.raises(TypeError):
            BaseAdapter()  # type: ignore[abstract]
