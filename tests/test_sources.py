from __future__ import annotations

import pytest
import requests

from autoapply.models import Platform, SearchPreference
from autoapply.platforms import SearchConfig
from autoapply.sources import ArbeitnowSource, RemotiveSource
from autoapply.sources import arbeitnow, remotive
from autoapply.sources.base import build_query, html_to_text
from autoapply.sources.browser import external_id, search_url


class FakeResponse:
    def __init__(self, payload, status=200):
        self.payload = payload
        self.status = status

    def raise_for_status(self):
        if self.status >= 400:
            raise requests.HTTPError(f"{self.status} error")

    def json(self):
        return self.payload


def test_html_to_text():
    raw = "<p>Build <b>React</b> &amp; Node</p><script>alert(1)</script>\n<ul><li>Remote</li></ul>"
    assert html_to_text(raw) == "Build React & Node Remote"
    assert html_to_text(None) == ""


def test_build_query_prefers_first_role():
    assert build_query(SearchPreference(roles=("MERN Developer", "React Developer"))) == "MERN Developer"
    assert build_query(SearchPreference(keywords=("react", "node", "mongo"))) == "react node"
    assert build_query(SearchPreference()) == ""


def test_remotive_maps_fields(monkeypatch):
    payload = {"jobs": [
        {
            "id": 42,
            "url": "https://remotive.com/remote-jobs/software-dev/mern-42",
            "title": "MERN Developer",
            "company_name": "Acme",
            "candidate_required_location": "Worldwide",
            "description": "<p>React and Node</p>",
            "tags": ["mongodb", "express"],
            "publication_date": "2026-10-01T10:00:00",
        },
        {"id": 43, "url": "", "title": "No link"},
    ]}
    calls = []

    def fake_get(url, params=None, timeout=None):
        calls.append(params)
        return FakeResponse(payload)

    monkeypatch.setattr(remotive.requests, "get", fake_get)
    postings = RemotiveSource().search(SearchPreference(roles=("MERN Developer",)))
    assert calls == [{"search": "MERN Developer", "limit": 50}]
    assert len(postings) == 1
    p = postings[0]
    assert p.external_id == "remotive_42"
    assert p.platform is Platform.REMOTIVE
    assert p.location == "Remote - Worldwide"
    assert p.description == "React and Node mongodb express"
    assert p.id == "" and p.user_id == ""


def test_remotive_without_query_makes_no_request(monkeypatch):
    monkeypatch.setattr(remotive.requests, "get", pytest.fail)
    assert RemotiveSource().search(SearchPreference()) == []


def test_arbeitnow_filters_onsite_for_remote_preference(monkeypatch):
    payload = {"data": [
        {"slug": "dev-a", "url": "https://arbeitnow.com/a", "title": "Full Stack Developer",
         "company_name": "A", "remote": True, "location": "Berlin", "description": "<p>x</p>",
         "created_at": 0},
        {"slug": "dev-b", "url": "https://arbeitnow.com/b", "title": "Full Stack Developer",
         "company_name": "B", "remote": False, "location": "Munich"},
    ]}
    monkeypatch.setattr(arbeitnow.requests, "get", lambda url, timeout=None: FakeResponse(payload))
    postings = ArbeitnowSource().search(SearchPreference(remote=True))
    assert [p.external_id for p in postings] == ["arbeitnow_dev-a"]
    assert postings[0].location == "Remote (Berlin)"
    assert postings[0].posted_at == "1970-01-01T00:00:00+00:00"

    both = ArbeitnowSource().search(SearchPreference(remote=False))
    assert len(both) == 2


def test_search_url_and_external_id():
    config = SearchConfig(
        url="https://www.linkedin.com/jobs/search/",
        cards=("li",),
        link=("a",),
        params={"query": "keywords", "location": "location"},
        fixed_params={"f_WT": "2"},
    )
    url = search_url(config, SearchPreference(roles=("MERN Developer",), remote=True))
    assert url == "https://www.linkedin.com/jobs/search/?keywords=MERN+Developer&location=Remote&f_WT=2"
    assert external_id(Platform.LINKEDIN, "https://www.linkedin.com/jobs/view/987/?trk=x",
                       r"/jobs/view/(\d+)") == "linkedin_987"
    assert external_id(Platform.INDEED, "https://www.indeed.com/viewjob?x=1", "jk=([0-9a-f]+)") == \
        "indeed_https://www.indeed.com/viewjob"
