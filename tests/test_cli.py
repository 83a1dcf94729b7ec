from __future__ import annotations

from tracelens.cli import rerun_hint
from tracelens.config import SourceToggles


def test_rerun_hint_names_the_wider_scope():
    request = {"suggested_time_range": "last_7_days", "enable_sources": []}
    assert rerun_hint(request, SourceToggles()) == "(re-run with --scope last_7_days to widen the search)"


def test_rerun_hint_keeps_enabled_sources_and_adds_requested_ones():
    request = {"suggested_time_range": "last_30_days", "enable_sources": ["ocr"]}
    hint = rerun_hint(request, SourceToggles(ocr=False, files=True, music=False))
    assert hint == "(re-run with --scope last_30_days --sources ocr,files to widen the search)"
