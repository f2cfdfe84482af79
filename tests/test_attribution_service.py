from types import SimpleNamespace
from unittest.mock import MagicMock, Mock, patch
from uuid import uuid4

import httpx
from sqlalchemy.dialects import postgresql

from app.services.attribution_service import (
    AttributionContext,
    _find_by_post_id,
    clean_url,
    derive_canonical_candidates,
    expand_short_link,
    extract_post_ids,
    extract_short_code,
    is_short_link,
    resolve_attribution,
)


def _ad(ad_id="120200001", campaign_id="120100001", **fields):
    return SimpleNamespace(
        ad_id=ad_id,
        adset_id=fields.get("adset_id", "120300001"),
        campaign_id=campaign_id,
        ad_account_id=fields.get("ad_account_id"),
        name=fields.get("name", "Anúncio PIX"),
    )


def _response(status_code=200, location=None, url=None):
    response = Mock()
    response.status_code = status_code
    response.is_redirect = location is not None
    response.headers = {"location": location} if location else {}
    response.url = url
    return response


class TestUrlHelpers:
    def test_short_link_hosts(self):
        assert is_short_link("https://fb.me/abcDEF123")
        assert is_short_link("https://l.facebook.com/l.php?u=https%3A%2F%2Fexample.com")
        assert is_short_link("https://l.instagram.com/?u=https%3A%2F%2Fexample.com")
        assert is_short_link("https://www.instagram.com/p/CxYz123AbC/")
        assert not is_short_link("https://www.facebook.com/123/posts/456")
        assert not is_short_link(None)

    def test_clean_url(self):
        assert clean_url("https://www.facebook.com/loja/posts/123?utm_source=x") == "facebook.com/loja/posts/123"
        assert clean_url("http://instagram.com/p/abc/") == "instagram.com/p/abc"

    def test_extract_post_ids(self):
        assert extract_post_ids("https://www.facebook.com/story.php?story_fbid=111&id=9") == ["111"]
        assert extract_post_ids("https://www.facebook.com/permalink.php?post_id=999_222") == ["222", "999_222"]
        assert extract_post_ids("https://www.facebook.com/1234/posts/5678") == ["5678"]
        assert extract_post_ids("https://www.instagram.com/p/CxYz123AbC/") == ["CxYz123AbC"]
        assert extract_post_ids("https://example.com/landing") == []

    def test_extract_short_code(self):
        assert extract_short_code("https://fb.me/abcDEF123") == "abcDEF123"
        assert extract_short_code("https://www.instagram.com/reel/Reel9876/") == "Reel9876"
        assert extract_short_code("https://fb.me/ab") is None

    def test_derive_canonical_candidates(self):
        assert derive_canonical_candidates("https://fb.me/abcDEF123") == [
            "https://www.facebook.com/abcDEF123",
            "https://m.facebook.com/abcDEF123",
        ]
        assert derive_canonical_candidates(
            "https://l.facebook.com/l.php?u=https%3A%2F%2Fwww.facebook.com%2F1%2Fposts%2F2"
        ) == ["https://www.facebook.com/1/posts/2"]


class TestExpandShortLink:
    @patch("app.services.attribution_service.httpx.Client")
    def test_follows_head_redirects_manually(self, mock_client_class):
        mock_client = MagicMock()
        mock_client_class.return_value.__enter__.return_value = mock_client
        mock_client.head.side_effect = [
            _response(301, location="https://m.facebook.com/story.php?story_fbid=1234567890123&id=9"),
            _response(302, location="/story.php?story_fbid=1234567890123&id=9&ref=x"),
            _response(200),
        ]

        urls = expand_short_link("https://fb.me/abcDEF123")

        assert urls[0] == "https://m.facebook.com/story.php?story_fbid=1234567890123&id=9"
        assert urls[1] == "https://m.facebook.com/story.php?story_fbid=1234567890123&id=9&ref=x"
        assert "https://www.facebook.com/abcDEF123" in urls
        mock_client.get.assert_not_called()

    @patch("app.services.attribution_service.httpx.Client")
    def test_redirect_hops_are_bounded(self, mock_client_class):
        mock_client = MagicMock()
        mock_client_class.return_value.__enter__.return_value = mock_client
        mock_client.head.return_value = _response(301, location="https://fb.me/loop")

        expand_short_link("https://fb.me/abcDEF123", max_hops=3)

        assert mock_client.head.call_count == 3

    @patch("app.services.attribution_service.httpx.Client")
    def test_falls_back_to_get_with_follow(self, mock_client_class):
        mock_client = MagicMock()
        mock_client_class.return_value.__enter__.return_value = mock_client
        mock_client.head.return_value = _response(405)
        mock_client.get.return_value = _response(200, url="https://www.instagram.com/p/CxYz123AbC/")

        urls = expand_short_link("https://www.instagram.com/p/CxYz123AbC")

        assert urls == ["https://www.instagram.com/p/CxYz123AbC/"]
        assert mock_client.get.call_args[1]["follow_redirects"] is True

    @patch("app.services.attribution_service.httpx.Client")
    def test_network_failure_keeps_offline_candidates(self, mock_client_class):
        mock_client = MagicMock()
        mock_client_class.return_value.__enter__.return_value = mock_client
        mock_client.head.side_effect = httpx.ConnectError("dns failure")

        urls = expand_short_link("https://fb.me/abcDEF123")

        assert urls == ["https://www.facebook.com/abcDEF123", "https://m.facebook.com/abcDEF123"]


class TestResolveAttribution:
    @patch("app.services.attribution_service._find_by_clean_url", return_value=None)
    @patch("app.services.attribution_service._find_by_post_id")
    @patch("app.services.attribution_service.httpx.Client")
    def test_short_link_resolved_via_mocked_redirect(self, mock_client_class, mock_find_post, _mock_find_url):
        mock_client = MagicMock()
        mock_client_class.return_value.__enter__.return_value = mock_client
        mock_client.head.side_effect = [
            _response(301, location="https://www.facebook.com/story.php?story_fbid=1234567890123&id=9"),
            _response(200),
        ]
        mock_find_post.side_effect = lambda ctx, post_id: _ad() if post_id == "1234567890123" else None

        match = resolve_attribution(
            Mock(),
            tenant_id=uuid4(),
            phone="5511999990000",
            source_url="https://fb.me/abcDEF123",
            ctwa_clid=None,
        )

        assert match.matched is True
        assert match.strategy == "short_link_expansion"
        assert match.campaign_id == "120100001"
        assert match.ad_id == "120200001"

    @patch("app.services.attribution_service._find_by_clean_url", return_value=None)
    @patch("app.services.attribution_service._find_by_post_id")
    def test_post_identifier_strategy(self, mock_find_post, _mock_find_url):
        mock_find_post.side_effect = lambda ctx, post_id: _ad() if post_id == "5678" else None

        match = resolve_attribution(
            Mock(),
            tenant_id=uuid4(),
            phone="5511999990000",
            source_url="https://www.facebook.com/1234/posts/5678",
            ctwa_clid=None,
        )

        assert match.strategy == "post_identifier"

    @patch("app.services.attribution_service._find_ad", return_value=None)
    @patch("app.services.attribution_service._find_by_clean_url", return_value=None)
    @patch("app.services.attribution_service._find_by_post_id")
    def test_record_without_campaign_does_not_count(self, mock_find_post, _mock_url, _mock_ad):
        mock_find_post.return_value = _ad(campaign_id=None)

        match = resolve_attribution(
            Mock(),
            tenant_id=uuid4(),
            phone="5511999990000",
            source_url="https://www.facebook.com/1234/posts/5678",
            ctwa_clid=None,
        )

        assert match.matched is False
        assert match.strategy is None

    def test_correlation_prefix_borrows_other_lead_campaign(self):
        db = Mock()
        db.query.return_value.filter.return_value.order_by.return_value.first.return_value = SimpleNamespace(
            ad_id="a1", adset_id="s1", campaign_id="c1", ad_account_id=None
        )

        match = resolve_attribution(
            db,
            tenant_id=uuid4(),
            phone="5511999990000",
            source_url=None,
            ctwa_clid="ARAkLmnopQRstuvWXyz",
        )

        assert match.campaign_id == "c1"
        assert match.strategy == "correlation_prefix"
        # most recently updated lead wins
        order = db.query.return_value.filter.return_value.order_by.call_args[0][0]
        assert "updated_at DESC" in str(order)

    def test_like_wildcards_in_identifiers_are_escaped(self):
        ctx = AttributionContext(db=Mock(), tenant_id=uuid4(), phone="5511999990000")

        with patch("app.services.attribution_service._find_ad") as mock_find_ad:
            _find_by_post_id(ctx, "Cx_Yz_12")

        condition = mock_find_ad.call_args[0][1]
        compiled = condition.compile(dialect=postgresql.dialect(), compile_kwargs={"literal_binds": True})
        assert "Cx/_Yz/_12" in str(compiled)
        assert "ESCAPE '/'" in str(compiled)

    def test_short_correlation_id_is_not_used(self):
        db = Mock()

        match = resolve_attribution(db, tenant_id=uuid4(), phone="55119", source_url=None, ctwa_clid="ARAk")

        assert match.matched is False
        db.query.assert_not_called()

    def test_no_inputs_is_not_an_error(self):
        db = Mock()

        match = resolve_attribution(db, tenant_id=uuid4(), phone="55119", source_url="  ", ctwa_clid=None)

        assert match.matched is False
        db.query.assert_not_called()
