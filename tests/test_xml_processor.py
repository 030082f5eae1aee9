from feed_importer.domain.imports.models import FeedFormat
from feed_importer.domain.imports.processors.detection import detect_feed_format
from feed_importer.domain.imports.processors.xml_processor import (
    detect_encoding,
    detect_item_path,
    iter_xml_records,
    repair_partial_xml,
    sanitize_xml,
)
from tests.utils.feeds import build_shop_xml, shop_item


def _records(data: bytes, item_path: str = "SHOPITEM"):
    cleaned = sanitize_xml(data)
    return list(iter_xml_records(repair_partial_xml(cleaned, item_path), item_path))


def test_detect_feed_format_by_first_byte():
    assert detect_feed_format(b'\xef\xbb\xbf  <?xml version="1.0"?><SHOP/>') == FeedFormat.XML
    assert detect_feed_format(b'\n[{"name": "A"}]') == FeedFormat.JSON
    assert detect_feed_format(b'{"products": []}') == FeedFormat.JSON
    assert detect_feed_format(b"name;price\nA;1") == FeedFormat.CSV
    assert detect_feed_format(b"   ") == FeedFormat.XML


def test_iter_xml_records_flattens_item_children():
    data = build_shop_xml([shop_item(1), shop_item(2)])

    records = _records(data)

    assert len(records) == 2
    assert records[0]["PRODUCTNAME"] == "Product 1"
    assert records[0]["PRICE_VAT"] == "101,90"
    assert records[1]["EAN"] == "8590000000002"


def test_nested_values_are_keyed_by_enclosing_tag():
    data = (
        b"<SHOP><SHOPITEM><PRODUCTNAME>Lamp</PRODUCTNAME>"
        b"<PARAM><PARAM_NAME>color</PARAM_NAME><VAL>red</VAL></PARAM>"
        b"</SHOPITEM></SHOP>"
    )

    records = _records(data)

    assert records == [{"PRODUCTNAME": "Lamp", "PARAM_NAME": "color", "VAL": "red"}]


def test_item_path_matches_case_insensitively():
    data = b"<products><Product><name>A</name></Product><PRODUCT><name>B</name></PRODUCT></products>"

    records = _records(data, item_path="product")

    assert [r["name"] for r in records] == ["A", "B"]


def test_truncated_document_yields_only_complete_items():
    full = build_shop_xml([shop_item(1), shop_item(2), shop_item(3)])
    truncated = full[:full.rindex(b"<PRICE_VAT>") + 5]

    records = _records(truncated)

    assert [r["ITEM_ID"] for r in records] == ["1", "2"]


def test_repair_closes_root_after_last_complete_item():
    data = b'<?xml version="1.0"?>\n<SHOP><SHOPITEM><A>1</A></SHOPITEM><SHOPITEM><A>2'

    repaired = repair_partial_xml(data, "SHOPITEM")

    assert repaired.endswith(b"</SHOPITEM>\n</SHOP>")
    assert b"<A>2" not in repaired


def test_repair_leaves_complete_document_alone():
    data = build_shop_xml([shop_item(1)])

    repaired = repair_partial_xml(data, "SHOPITEM")

    assert repaired.count(b"</SHOP>") == 1
    assert repaired.rstrip().endswith(b"</SHOP>")


def test_repair_without_complete_item_yields_nothing():
    data = b"<SHOP><SHOPITEM><PRODUCTNAME>Half"

    assert _records(data) == []


def test_sanitize_strips_bom_and_control_characters():
    data = b"\xef\xbb\xbf<SHOP><SHOPITEM><PRODUCTNAME>Bad\x0bname\x01</PRODUCTNAME></SHOPITEM></SHOP>"

    records = _records(data)

    assert records == [{"PRODUCTNAME": "Badname"}]


def test_windows_1250_document_is_decoded():
    data = build_shop_xml([shop_item(1, PRODUCTNAME="Žltý stôl")], encoding="windows-1250")

    assert detect_encoding(data) == "windows-1250"
    assert _records(data)[0]["PRODUCTNAME"] == "Žltý stôl"


def test_explicit_encoding_overrides_missing_declaration():
    data = "<SHOP><SHOPITEM><PRODUCTNAME>Žltý stôl</PRODUCTNAME></SHOPITEM></SHOP>".encode("windows-1250")

    records = list(iter_xml_records(data, "SHOPITEM", encoding="windows-1250"))

    assert records == [{"PRODUCTNAME": "Žltý stôl"}]


def test_detect_encoding_defaults_to_utf8():
    assert detect_encoding(b"<SHOP></SHOP>") == "UTF-8"


def test_detect_item_path_prefers_conventional_names():
    assert detect_item_path(build_shop_xml([shop_item(1)])) == "SHOPITEM"
    assert detect_item_path(b"<products><product id='1'><name>A</name></product></products>") == "product"
    assert detect_item_path(b"<feed><entry><title>A</title></entry></feed>") == "entry"
    assert detect_item_path(b"<catalog><thing/></catalog>") == "SHOPITEM"


def test_detect_item_path_does_not_match_longer_tag_names():
    data = b"<offers><items><offer><name>A</name></offer></items></offers>"

    assert detect_item_path(data) == "offer"


def test_empty_items_are_not_yielded():
    data = b"<SHOP><SHOPITEM>   </SHOPITEM><SHOPITEM><A>1</A></SHOPITEM></SHOP>"

    assert _records(data) == [{"A": "1"}]
