"""
Integration test: refresh -> parse and spill -> store -> search rebuild -> text metrics.

Runs the real client (over a mock transport), parser, refresher, rebuilder
and text metrics worker against the in-memory document store.
"""

import threading
from unittest.mock import AsyncMock

import httpx
import pytest

from ecfr_analyzer.analysis.workers.text_metrics import TextMetricsWorker
from ecfr_analyzer.core.xml_parser import TitleXMLParser
from ecfr_analyzer.ingestion.index_rebuilder import IndexRebuilder
from ecfr_analyzer.ingestion.title_refresher import TitleRefresher
from ecfr_analyzer.integration.ecfr_client import EcfrClient
from ecfr_analyzer.models.config_models import RefreshConfig
from ecfr_analyzer.models.record_models import ThreadType

TITLE_7_XML = (
    "<DLPSTEXTCLASS><TEXT><BODY><ECFRBRWS><AMDDATE>Mar. 1, 2024</AMDDATE>"
    '<DIV1 N="7" TYPE="TITLE"><HEAD>Title 7 - Agriculture</HEAD>'
    '<DIV3 N="I" TYPE="CHAPTER"><HEAD>CHAPTER I - AGRICULTURAL MARKETING SERVICE</HEAD>'
    '<DIV5 N="27" TYPE="PART"><HEAD>PART 27 - COTTON CLASSIFICATION</HEAD>'
    '<DIV8 N="27.1" TYPE="SECTION"><HEAD>§ 27.1 Meaning of words.</HEAD>'
    "<P>Words used in the singular form shall be deemed to import the plural.</P>"
    "</DIV8>"
    '<DIV8 N="27.2" TYPE="SECTION"><HEAD>§ 27.2 Fees.</HEAD>'
    "<P>A fee must be paid for each sample. Samples are prohibited from resale.</P>"
    "<CITA>[21 FR 1234, Jan. 5, 1956]</CITA>"
    "</DIV8></DIV5></DIV3></DIV1></ECFRBRWS></BODY></TEXT></DLPSTEXTCLASS>"
).encode("utf-8")


async def no_sleep(seconds):
    return None


def upstream(request):
    if request.url.path.endswith("/titles.json"):
        return httpx.Response(
            200,
            json={
                "titles": [
                    {"number": 7, "name": "Agriculture", "latest_issue_date": "2024-03-01"},
                    {"number": 35, "name": "Panama Canal", "reserved": True},
                ]
            },
        )
    if request.url.path.endswith("ECFR-title7.xml"):
        return httpx.Response(200, content=TITLE_7_XML)
    return httpx.Response(404)


@pytest.mark.asyncio
async def test_refresh_index_and_analyze(store, analyzer_config):
    search = AsyncMock()
    search.index_name = "ecfr_documents"
    search.bulk_index.side_effect = lambda records, refresh=True: (len(records), 0)

    config = RefreshConfig(download_backoff=0.0, delay_between_titles=0.0)
    client = EcfrClient(config, transport=httpx.MockTransport(upstream))
    # Small thresholds force the title document's text into the blob store
    parser = TitleXMLParser(store.blobs, record_threshold=200, field_threshold=100)
    refresher = TitleRefresher(store, search, client, config=config, parser=parser, sleep=no_sleep)

    row = await refresher.refresh()

    assert row["status"] == "completed"
    assert row["processedTitleNumbers"] == [7]
    assert [d["type"] for d in store.documents] == [
        "title",
        "chapter",
        "part",
        "section",
        "section",
    ]
    title_document = store.documents[0]
    assert "contentGridFS" in title_document
    assert title_document["content"].startswith("[Content stored in GridFS:")
    fees = store.documents[4]
    assert fees["section"] == "27.2"
    assert fees["citations"][0]["text"] == "[21 FR 1234, Jan. 5, 1956]"
    assert store.titles[0]["number"] == 7
    assert store.titles[0]["isCompressed"] is True

    rebuild = await IndexRebuilder(store, search).rebuild()
    assert rebuild["status"] == "completed"
    assert rebuild["indexedDocuments"] == 5

    await store.seed_thread_rows(list(ThreadType))
    worker = TextMetricsWorker(
        analyzer_config, threading.Event(), lambda message: None, store=store, sleep=no_sleep
    )
    outcome = await worker.execute()

    assert outcome == {"type": "completed", "data": {"total": 1, "failedCount": 0}}
    frequency = store.metrics[0]["metrics"]["keywordFrequency"]
    assert frequency["shall"] == 1
    assert frequency["must"] == 1
    assert frequency["fee"] == 1
    assert frequency["prohibited"] == 1
