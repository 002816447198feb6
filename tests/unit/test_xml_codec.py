"""Tests for sfconn.xml_codec."""

import xml.etree.ElementTree as ET

import pytest

from sfconn import xml_codec
from sfconn.exceptions import ProtocolError, XmlDecodeError
from sfconn.xml_codec import UNSET, as_array, decode, encode, parse

NS = ' xmlns:xsi="http://www.w3.org/2001/XMLSchema-instance" xmlns="urn:partner.soap.sforce.com"'


def roundtrip(value):
    return decode(parse(encode("root", NS, value)))


class TestEncode:
    def test_declaration_and_root_attributes(self):
        out = encode("soapenv:Envelope", ' xmlns:soapenv="http://schemas.xmlsoap.org/soap/envelope/"', {})

        assert out.startswith('<?xml version="1.0" encoding="UTF-8"?>')
        assert '<soapenv:Envelope xmlns:soapenv="http://schemas.xmlsoap.org/soap/envelope/"' in out

    def test_null_sets_nil_without_text(self):
        out = encode("root", NS, {"Name": None})
        el = parse(out).find("{urn:partner.soap.sforce.com}Name")

        assert el.get(f"{{{xml_codec.XSI_NS}}}nil") == "true"
        assert el.text is None

    def test_underscore_sets_text_on_current_element(self):
        out = encode("root", NS, {"value": {"$xsi:type": "xsd:string", "_": "hello"}})
        el = parse(out).find("{urn:partner.soap.sforce.com}value")

        assert el.text == "hello"
        assert el.get(f"{{{xml_codec.XSI_NS}}}type") == "xsd:string"
        assert len(el) == 0

    def test_underscore_none_sets_nil(self):
        out = encode("root", NS, {"value": {"_": None}})
        assert 'xsi:nil="true"' in out

    def test_unset_entries_are_skipped(self):
        out = encode("root", NS, {"keep": "1", "drop": UNSET})

        assert "<keep>1</keep>" in out
        assert "drop" not in out

    def test_list_repeats_sibling_tag(self):
        out = encode("root", NS, {"ids": ["a", "b", "c"]})
        assert out.count("<ids>") == 3

    def test_scalars_are_stringified(self):
        out = encode("root", NS, {"flag": True, "off": False, "n": 5})

        assert "<flag>true</flag>" in out
        assert "<off>false</off>" in out
        assert "<n>5</n>" in out

    def test_text_is_escaped(self):
        out = encode("root", NS, {"q": "a < b & c"})
        assert decode(parse(out))["q"] == "a < b & c"

    def test_unset_special_keys_are_skipped(self):
        out = encode("x", "", {"_": UNSET, "$xsi:type": UNSET, "a": "1"})

        assert out == '<?xml version="1.0" encoding="UTF-8"?><x><a>1</a></x>'

    def test_no_empty_default_namespace(self):
        out = encode("root", NS, {"child": {"grandchild": "x"}})
        assert 'xmlns=""' not in out


class TestDecode:
    def test_nil_wins_over_other_attributes(self):
        el = parse(
            '<r xmlns:xsi="http://www.w3.org/2001/XMLSchema-instance" '
            'xsi:nil="true" xsi:type="sObject"><a>1</a></r>'
        )
        assert decode(el) is None

    def test_xsi_type_seeds_complex_value(self):
        el = parse(
            '<r xmlns:xsi="http://www.w3.org/2001/XMLSchema-instance" '
            'xmlns:sf="urn:sobject" xsi:type="sf:sObject"><sf:Id>001</sf:Id></r>'
        )
        assert decode(el) == {"$xsi:type": "sf:sObject", "Id": "001"}

    def test_local_names_are_used(self):
        el = parse('<r xmlns="urn:x" xmlns:sf="urn:y"><sf:Name>Acme</sf:Name><size>1</size></r>')
        assert decode(el) == {"Name": "Acme", "size": "1"}

    def test_text_only_element_is_string(self):
        assert decode(parse("<r>hello</r>")) == "hello"
        assert decode(parse("<r/>")) == ""

    def test_repeated_tags_coalesce(self):
        el = parse("<r><x>1</x><x>2</x><x>3</x><y>only</y></r>")
        assert decode(el) == {"x": ["1", "2", "3"], "y": "only"}

    def test_comment_is_fatal(self):
        with pytest.raises(XmlDecodeError) as excinfo:
            decode(parse("<r><!-- nope --><a>1</a></r>"))

        assert isinstance(excinfo.value, ProtocolError)

    def test_processing_instruction_is_fatal(self):
        with pytest.raises(XmlDecodeError):
            decode(parse("<r><?pi data?></r>"))

    def test_accepts_elements_built_in_memory(self):
        root = ET.Element("r")
        ET.SubElement(root, "a").text = "1"
        ET.SubElement(root, "b").set("xsi:nil", "true")

        assert decode(root) == {"a": "1", "b": None}


class TestRoundTrip:
    @pytest.mark.parametrize(
        "value",
        [
            "plain",
            None,
            {"Name": "Acme", "Industry": None},
            {"record": {"$xsi:type": "sObject", "Id": "001", "Name": "Acme"}},
            {"child": ["A", "B", "C"]},
            {"child": "A"},
            {"outer": {"inner": {"leaf": "deep"}}, "list": [{"k": "1"}, {"k": "2"}]},
        ],
    )
    def test_roundtrip(self, value):
        assert roundtrip(value) == value

    def test_single_item_is_not_wrapped(self):
        assert roundtrip({"child": ["A"]}) == {"child": "A"}


class TestAsArray:
    def test_as_array(self):
        assert as_array(None) == []
        assert as_array("") == []
        assert as_array("x") == ["x"]
        assert as_array(["x", "y"]) == ["x", "y"]
        assert as_array({"a": "1"}) == [{"a": "1"}]
