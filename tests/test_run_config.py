"""
Tests for run_config.py and the data model records.
"""

from pathlib import Path
from urllib.parse import unquote

import pytest

from sapnotes.errors import ConfigurationError, SearchExhaustedError
from sapnotes.models import AffectedVersion, ArticleDetail, SearchResponse
from sapnotes.run_config import NotesRunConfig, is_container_environment, resolve_certificate_path


class TestFromEnv:

    def test_required_variables(self):
        with pytest.raises(ConfigurationError) as info:
            NotesRunConfig.from_env({"PFX_PATH": "cert.pfx"})
        assert "PFX_PASSPHRASE" in str(info.value)

    def test_defaults(self, tmp_path):
        cfg = NotesRunConfig.from_env(
            {"PFX_PATH": "certs/sap.pfx", "PFX_PASSPHRASE": "pw"}, project_root=tmp_path
        )
        assert cfg.pfx_path == str(tmp_path / "certs" / "sap.pfx")
        assert cfg.cache_path == "token-cache.json"
        assert cfg.max_credential_age_hours == 12.0
        assert cfg.browser_idle_timeout_s == 300.0
        assert cfg.headless

    @pytest.mark.parametrize("system,os_token", [
        ("Linux", "X11; Linux x86_64"),
        ("Windows", "Windows NT 10.0; Win64; x64"),
        ("Darwin", "Macintosh; Intel Mac OS X 10_15_7"),
    ])
    def test_user_agent_follows_host(self, monkeypatch, system, os_token):
        monkeypatch.setattr("sapnotes.utils.platform.system", lambda: system)
        assert f"({os_token})" in NotesRunConfig().user_agent

    def test_overrides(self, tmp_path):
        cfg = NotesRunConfig.from_env({
            "PFX_PATH": "/abs/sap.pfx",
            "PFX_PASSPHRASE": "pw",
            "TOKEN_CACHE_PATH": "/tmp/cache.json",
            "MAX_JWT_AGE_H": "2",
            "BROWSER_IDLE_TIMEOUT_S": "60",
            "PLAYWRIGHT_BROWSER_TYPE": "firefox",
            "HEADFUL": "true",
            "DISPLAY": ":0",
        })
        assert cfg.pfx_path == "/abs/sap.pfx"
        assert cfg.cache_path == "/tmp/cache.json"
        assert cfg.max_credential_age_hours == 2.0
        assert cfg.browser_idle_timeout_s == 60.0
        assert cfg.browser_type == "firefox"
        assert cfg.headful

    def test_headful_ignored_in_containers(self):
        cfg = NotesRunConfig.from_env({
            "PFX_PATH": "/abs/sap.pfx", "PFX_PASSPHRASE": "pw",
            "HEADFUL": "true", "DISPLAY": ":0", "DOCKER_ENV": "true",
        })
        assert cfg.headless

    def test_malformed_number(self):
        with pytest.raises(ConfigurationError):
            NotesRunConfig.from_env({
                "PFX_PATH": "/abs/sap.pfx", "PFX_PASSPHRASE": "pw", "MAX_JWT_AGE_H": "soon",
            })


class TestHelpers:

    def test_container_heuristic(self):
        assert is_container_environment({})
        assert is_container_environment({"DISPLAY": ":0", "CI": "1"})
        assert not is_container_environment({"DISPLAY": ":0"})

    def test_home_expansion(self):
        assert resolve_certificate_path("~/sap.pfx") == str(Path.home() / "sap.pfx")

    def test_derived_urls(self):
        cfg = NotesRunConfig()
        assert cfg.coveo_search_url == (
            "https://sapamericaproductiontyfzmfz0.org.coveo.com/rest/search/v2"
        )
        assert cfg.note_detail_url("2744792") == (
            "https://me.sap.com/backend/raw/sapnotes/Detail?q=2744792&t=E&isVTEnabled=false"
        )
        assert cfg.note_public_url("2744792") == "https://launchpad.support.sap.com/#/notes/2744792"

    def test_knowledge_search_url(self):
        url = NotesRunConfig().knowledge_search_url("mm22")
        prefix = "https://me.sap.com/knowledge/search/"
        assert url.startswith(prefix)
        assert unquote(url[len(prefix):]) == (
            '{"q":"mm22","tab":"All","f":{"documenttype":["SAP Note"]}}'
        )


class TestModels:

    def test_detail_to_dict(self):
        detail = ArticleDetail(
            id="2744792", title="t", summary="s", release_date="2019-03-12",
            language="EN", url="u", component="BC-SEC", content="c",
            severity_score="9.1", severity_vector="CVSS:3.1/AV:N",
            affected_versions=(AffectedVersion("S4CORE", "102", "SP01"),),
        )
        data = detail.to_dict()
        assert data["releaseDate"] == "2019-03-12"
        assert data["cvssScore"] == "9.1"
        assert data["cvssVector"] == "CVSS:3.1/AV:N"
        assert data["affectedVersions"] == [
            {"component": "S4CORE", "version": "102", "supportPackage": "SP01"}
        ]

    def test_with_severity_never_overwrites(self):
        detail = ArticleDetail(
            id="1", title="t", summary="s", release_date="r", language="EN", url="u",
            severity_score="5.0",
        )
        filled = detail.with_severity("9.9", "CVSS:3.0/AV:N")
        assert filled.severity_score == "5.0"
        assert filled.severity_vector == "CVSS:3.0/AV:N"
        assert not filled.needs_severity

    def test_search_response_to_dict(self):
        response = SearchResponse(results=[], total_results=0, query="q")
        assert response.to_dict() == {"results": [], "totalResults": 0, "query": "q"}

    def test_exhausted_message(self):
        error = SearchExhaustedError("saml", [("coveo", "HttpStatusError: HTTP 500")])
        text = str(error)
        assert 'for "saml"' in text
        assert "coveo: HttpStatusError: HTTP 500" in text
        assert "fetch(id)" in text
