"""
Unit tests for the title XML parser and the blob spill policy.
"""

from unittest.mock import AsyncMock

import pytest

from ecfr_analyzer.core.xml_parser import (
    NO_CONTENT,
    TitleXMLParser,
    apply_spill_policy,
    element_to_tree,
    parse_title_xml,
    plain_text,
)
from ecfr_analyzer.models.errors import XMLParseError


def wrap(div1: str, amddate: str = "<AMDDATE>Jan. 3, 2024</AMDDATE>") -> bytes:
    return (
        "<DLPSTEXTCLASS><TEXT><BODY><ECFRBRWS>"
        f"{amddate}{div1}"
        "</ECFRBRWS></BODY></TEXT></DLPSTEXTCLASS>"
    ).encode("utf-8")


HIERARCHY_XML = wrap(
    '<DIV1 N="40" NODE="40" TYPE="TITLE"><HEAD>Title 40 - Protection of Environment</HEAD>'
    '<DIV5 N="100" TYPE="PART"><HEAD>PART 100 - GENERAL</HEAD>'
    '<DIV8 N="100.1" TYPE="SECTION"><HEAD>§ 100.1 Purpose.</HEAD>'
    "<P>This part applies to <I>all</I> permits.</P>"
    "<P>Operators shall keep records.</P>"
    "</DIV8></DIV5></DIV1>"
)


class TestHierarchy:
    """Test document extraction from the DIV hierarchy."""

    def test_title_part_section(self):
        """Test a div1 > div5 > div8 file yields three documents."""
        parsed = parse_title_xml(HIERARCHY_XML, 40)

        assert [d["type"] for d in parsed.documents] == ["title", "part", "section"]
        title, part, section = parsed.documents

        assert title["part"] is None
        assert part["part"] == "100"
        assert part["section"] is None
        assert section["part"] == "100"
        assert section["section"] == "100.1"
        assert section["heading"] == "§ 100.1 Purpose."
        assert "This part applies to all permits." in section["content"]
        assert "Operators shall keep records." in section["content"]
        assert section["titleNumber"] == 40

    def test_identifiers_are_unique(self):
        """Test identifiers combine type, number and document ordinal."""
        parsed = parse_title_xml(HIERARCHY_XML, 40)

        identifiers = [d["identifier"] for d in parsed.documents]
        assert identifiers == ["title_40_1", "part_100_2", "section_100.1_3"]
        assert len(set(identifiers)) == len(identifiers)

    def test_amendment_date_propagates(self):
        """Test AMDDATE is copied onto every document."""
        parsed = parse_title_xml(HIERARCHY_XML, 40)

        assert parsed.amendment_date is not None
        assert parsed.amendment_date.year == 2024
        assert all(d["amendmentDate"] == parsed.amendment_date for d in parsed.documents)

    def test_missing_amendment_date(self):
        """Test a file without AMDDATE still parses."""
        parsed = parse_title_xml(wrap('<DIV1 N="1"><HEAD>T</HEAD></DIV1>', amddate=""), 1)

        assert parsed.amendment_date is None
        assert len(parsed.documents) == 1

    def test_empty_section_content(self):
        """Test a node without text gets the placeholder content."""
        parsed = parse_title_xml(wrap('<DIV1 N="2"><DIV8 N="2.1"></DIV8></DIV1>'), 2)

        section = parsed.documents[1]
        assert section["content"] == NO_CONTENT
        assert section["contentLength"] == 0
        assert section["heading"] is None

    def test_lowercase_tags(self):
        """Test tag names are matched case-insensitively."""
        xml = (
            b"<dlpstextclass><text><body><ecfrbrws>"
            b'<div1 n="3"><div5 n="7"><head>Part 7</head></div5></div1>'
            b"</ecfrbrws></body></text></dlpstextclass>"
        )
        parsed = parse_title_xml(xml, 3)

        assert [d["type"] for d in parsed.documents] == ["title", "part"]
        assert parsed.documents[1]["heading"] == "Part 7"

    def test_citations_and_notes(self):
        """Test citations and editorial notes are collected."""
        xml = wrap(
            '<DIV1 N="5"><DIV8 N="5.1"><HEAD>Sec</HEAD><P>Text.</P>'
            "<CITA>[60 FR 100, Jan. 1, 1995]</CITA>"
            "<EDNOTE><HED>Editorial Note:</HED><PSPACE>See note.</PSPACE></EDNOTE>"
            "</DIV8></DIV1>"
        )
        section = parse_title_xml(xml, 5).documents[1]

        assert section["citations"] == [{"text": "[60 FR 100, Jan. 1, 1995]", "type": "N"}]
        assert section["editorialNotes"][0]["heading"] == "Editorial Note:"

    def test_images_get_pdf_links(self):
        """Test gif graphics are paired with their PDF rendering."""
        xml = wrap(
            '<DIV1 N="6"><DIV9 N="A"><IMG SRC="/graphics/ec01.gif" ALT="fig"/></DIV9></DIV1>'
        )
        appendix = parse_title_xml(xml, 6).documents[1]

        assert appendix["type"] == "appendix"
        assert appendix["images"] == [
            {"src": "/graphics/ec01.gif", "alt": "fig", "pdfLink": "/graphics/pdfs/ec01.pdf"}
        ]


class TestMalformedInput:
    """Test parse failures."""

    def test_syntax_error(self):
        with pytest.raises(XMLParseError):
            parse_title_xml(b"<DLPSTEXTCLASS><TEXT>", 1)

    def test_wrong_root(self):
        with pytest.raises(XMLParseError):
            parse_title_xml(b"<ROOT/>", 1)

    def test_missing_div1(self):
        """Test a browse element without a title division is rejected."""
        xml = b"<DLPSTEXTCLASS><TEXT><BODY><ECFRBRWS/></BODY></TEXT></DLPSTEXTCLASS>"
        with pytest.raises(XMLParseError):
            parse_title_xml(xml, 1)


class TestTextHelpers:
    """Test text and tree helpers on lxml elements."""

    def test_plain_text_ignores_attributes(self):
        from lxml import etree

        element = etree.fromstring('<P ID="x">Hello <E T="03">bold</E>  world</P>')
        assert plain_text(element) == "Hello bold world"

    def test_element_to_tree_repeated_children(self):
        from lxml import etree

        element = etree.fromstring('<ROW><ENT>a</ENT><ENT>b</ENT><ENT A="1">c</ENT></ROW>')
        tree = element_to_tree(element)

        assert tree["ent"][0] == "a"
        assert tree["ent"][2] == {"a": "1", "_": "c"}


class TestSpillPolicy:
    """Test moving oversized fields to the blob store."""

    @pytest.mark.asyncio
    async def test_large_content_is_spilled(self):
        """Test oversized content is replaced by a sentinel and uploaded."""
        blob_store = AsyncMock()
        blob_store.upload.return_value = "blob-1"
        content = "x" * 5000
        documents = [
            {
                "titleNumber": 9,
                "type": "section",
                "identifier": "section_9.1_2",
                "content": content,
                "formattedContent": "short",
                "structuredContent": {"paragraphs": []},
            }
        ]

        spilled = await apply_spill_policy(
            documents, blob_store, record_threshold=1000, field_threshold=1000
        )

        assert spilled == 1
        assert documents[0]["content"] == "[Content stored in GridFS: 5000 bytes]"
        assert documents[0]["contentGridFS"] == "blob-1"
        filename, data, metadata = blob_store.upload.call_args.args
        assert filename == "9_section_9.1_2_content"
        assert data == content.encode("utf-8")
        assert metadata["identifier"] == "section_9.1_2"

    @pytest.mark.asyncio
    async def test_small_records_untouched(self):
        blob_store = AsyncMock()
        documents = [
            {"titleNumber": 1, "type": "title", "identifier": "title_1_1", "content": "tiny"}
        ]

        assert await apply_spill_policy(documents, blob_store) == 0
        blob_store.upload.assert_not_called()
        assert documents[0]["content"] == "tiny"

    @pytest.mark.asyncio
    async def test_parser_facade_spills(self):
        """Test TitleXMLParser parses then applies its thresholds."""
        blob_store = AsyncMock()
        blob_store.upload.return_value = "blob-2"
        body = "<P>" + ("word " * 400) + "</P>"
        xml = wrap(f'<DIV1 N="8"><DIV8 N="8.1">{body}</DIV8></DIV1>')

        parser = TitleXMLParser(blob_store, record_threshold=500, field_threshold=500)
        parsed = await parser.parse(xml, 8)

        section = parsed.documents[1]
        assert section["content"].startswith("[Content stored in GridFS:")
        assert section["contentGridFS"] == "blob-2"
