"""
Candidate extraction from venue websites and social pages.
"""
import asyncio
import json

import httpx

from photo_crawler.models import PRIORITY_INLINE, PRIORITY_STRUCTURED, Source, Venue
from photo_crawler.web_candidates import (
    absolutize,
    extract_from_html,
    gather_web_candidates,
    origin,
    page_url,
)

SITE = "https://cafe.test/about"


def page(head: str = "", body: str = "") -> str:
    return f"<html><head>{head}</head><body>{body}</body></html>"


def urls(candidates):
    return [c.url for c in candidates]


class TestUrlHelpers:
    """Resolution of stored values and relative links."""

    def test_page_url(self):
        assert page_url("cafe.test") == "https://cafe.test"
        assert page_url("http://cafe.test/x") == "http://cafe.test/x"
        assert page_url("@cafe_x", Source.INSTAGRAM) == "https://www.instagram.com/cafe_x/"
        assert page_url("cafex", Source.FACEBOOK) == "https://www.facebook.com/cafex/"
        assert page_url("facebook.com/cafex", Source.FACEBOOK) == "https://facebook.com/cafex"
        assert page_url("   ") is None
        assert page_url(None) is None

    def test_absolutize(self):
        assert absolutize("/img/a.jpg", SITE) == "https://cafe.test/img/a.jpg"
        assert absolutize("data:image/png;base64,AAAA", SITE) is None
        assert absolutize("javascript:void(0)", SITE) is None
        assert absolutize("", SITE) is None

    def test_origin(self):
        assert origin("https://cafe.test/menu?x=1") == "https://cafe.test"


class TestStructuredMetadata:
    """og:image, twitter:image, image_src and JSON-LD."""

    def test_meta_tags_in_document_order(self):
        html = page(head=(
            '<meta property="og:image" content="/hero.jpg">'
            '<meta name="twitter:image" content="https://cdn.cafe.test/tw.jpg">'
            '<link rel="image_src" href="https://cafe.test/src.jpg">'
        ))
        found = extract_from_html(html, SITE, "Café X")
        assert urls(found) == [
            "https://cafe.test/hero.jpg",
            "https://cdn.cafe.test/tw.jpg",
            "https://cafe.test/src.jpg",
        ]
        assert all(c.priority == PRIORITY_STRUCTURED for c in found)
        assert [c.discovery_index for c in found] == [0, 1, 2]

    def test_jsonld_graph_and_image_object(self):
        data = {
            "@context": "https://schema.org",
            "@graph": [
                {"@type": "Restaurant", "image": ["https://cafe.test/a.jpg", "https://cafe.test/b.jpg"]},
                {"@type": "WebPage", "image": {"@type": "ImageObject", "url": "https://cafe.test/c.jpg"}},
            ],
        }
        html = page(head=f'<script type="application/ld+json">{json.dumps(data)}</script>')
        assert urls(extract_from_html(html, SITE, "Café X")) == [
            "https://cafe.test/a.jpg",
            "https://cafe.test/b.jpg",
            "https://cafe.test/c.jpg",
        ]

    def test_broken_jsonld_ignored(self):
        html = page(
            head='<script type="application/ld+json">{not json</script>'
                 '<meta property="og:image" content="https://cafe.test/ok.jpg">',
        )
        assert urls(extract_from_html(html, SITE, "Café X")) == ["https://cafe.test/ok.jpg"]


class TestInlineImages:
    """<img> fallback ordering and filtering."""

    def test_largest_declared_area_first(self):
        html = page(body=(
            '<img src="/small.jpg" width="100" height="100">'
            '<img src="/nodims.jpg">'
            '<img src="/big.jpg" width="1200" height="800">'
            '<img src="/medium.jpg" width="600px" height="400px">'
        ))
        found = extract_from_html(html, SITE, "Café X")
        assert urls(found) == [
            "https://cafe.test/big.jpg",
            "https://cafe.test/medium.jpg",
            "https://cafe.test/small.jpg",
            "https://cafe.test/nodims.jpg",
        ]
        assert all(c.priority == PRIORITY_INLINE for c in found)

    def test_logos_icons_avatars_and_data_uris_skipped(self):
        html = page(body=(
            '<img src="/assets/Logo.png" width="900" height="900">'
            '<img src="/favicon-icon.png">'
            '<img src="/team/avatar-1.jpg">'
            '<img src="data:image/gif;base64,R0lGOD">'
            '<img src="/dining-room.jpg">'
        ))
        assert urls(extract_from_html(html, SITE, "Café X")) == ["https://cafe.test/dining-room.jpg"]

    def test_lazy_src_and_srcset(self):
        html = page(body=(
            '<img data-src="/lazy.jpg" width="10" height="10">'
            '<img srcset="/wide.jpg 1200w, /narrow.jpg 600w" width="5" height="5">'
        ))
        assert urls(extract_from_html(html, SITE, "Café X")) == [
            "https://cafe.test/lazy.jpg",
            "https://cafe.test/wide.jpg",
        ]

    def test_base_href_honoured(self):
        html = page(head='<base href="https://static.cafe.test/site/">', body='<img src="room.jpg">')
        assert urls(extract_from_html(html, SITE, "Café X")) == ["https://static.cafe.test/site/room.jpg"]


class TestCandidateFields:
    """Attribution, license and dedupe."""

    def test_structured_wins_over_inline_duplicate(self):
        html = page(
            head='<meta property="og:image" content="https://cafe.test/hero.jpg">',
            body='<img src="/hero.jpg" width="2000" height="1000"><img src="/other.jpg">',
        )
        found = extract_from_html(html, SITE, "Café X")
        assert urls(found) == ["https://cafe.test/hero.jpg", "https://cafe.test/other.jpg"]
        assert found[0].priority == PRIORITY_STRUCTURED

    def test_attribution_and_author(self):
        html = page(head='<meta property="og:image" content="/hero.jpg">')
        c = extract_from_html(html, SITE, "Café X")[0]
        assert c.attribution == "© Café X – https://cafe.test"
        assert c.author == "Café X"
        assert c.source_url == SITE
        assert c.source is Source.WEBSITE
        assert c.license is None

    def test_rel_license_link(self):
        html = page(
            head='<link rel="license" href="https://creativecommons.org/licenses/by/4.0/">'
                 '<meta property="og:image" content="/hero.jpg">',
        )
        assert extract_from_html(html, SITE, "Café X")[0].license == "https://creativecommons.org/licenses/by/4.0/"

    def test_jsonld_license(self):
        data = {
            "@type": "Restaurant",
            "image": {"@type": "ImageObject", "contentUrl": "https://cafe.test/a.jpg"},
            "license": "CC BY-SA 4.0",
        }
        html = page(head=f'<script type="application/ld+json">{json.dumps(data)}</script>')
        assert extract_from_html(html, SITE, "Café X")[0].license == "CC BY-SA 4.0"

    def test_social_source_penalised(self):
        html = page(head='<meta property="og:image" content="https://ig.test/p.jpg">')
        c = extract_from_html(html, "https://www.instagram.com/cafex/", "Café X", Source.INSTAGRAM)[0]
        assert c.priority == PRIORITY_STRUCTURED + Source.INSTAGRAM.priority_penalty
        assert c.priority > PRIORITY_INLINE

    def test_start_index_offsets_discovery(self):
        html = page(head='<meta property="og:image" content="/a.jpg">')
        assert extract_from_html(html, SITE, "X", start_index=7)[0].discovery_index == 7

    def test_empty_page(self):
        assert extract_from_html("", SITE, "X") == []


class TestGatherWebCandidates:
    """Website first, social pages only as fallback."""

    def run(self, fake_web, venue):
        async def go():
            async with fake_web.client() as client:
                return await gather_web_candidates(client, venue)
        return asyncio.run(go())

    def test_website_hit_skips_social(self, fake_web):
        fake_web.page("https://cafe.test/", page(head='<meta property="og:image" content="/hero.jpg">'))
        venue = Venue(id="x", name="Café X", lat=0, lon=0, website="https://cafe.test/", instagram="cafex")
        found = self.run(fake_web, venue)
        assert urls(found) == ["https://cafe.test/hero.jpg"]
        assert [u for _, u in fake_web.requests] == ["https://cafe.test/"]

    def test_falls_back_to_instagram(self, fake_web):
        fake_web.page("https://cafe.test/", page(body="<p>no images</p>"))
        fake_web.page(
            "https://www.instagram.com/cafex/",
            page(head='<meta property="og:image" content="https://ig.test/p.jpg">'),
        )
        venue = Venue(id="x", name="Café X", lat=0, lon=0, website="https://cafe.test/", instagram="@cafex",
                      facebook="https://www.facebook.com/cafex")
        found = self.run(fake_web, venue)
        assert urls(found) == ["https://ig.test/p.jpg"]
        assert found[0].source is Source.INSTAGRAM
        assert "https://www.facebook.com/cafex" not in [u for _, u in fake_web.requests]

    def test_fetch_errors_yield_nothing(self, fake_web):
        fake_web.fail("https://cafe.test/", httpx.ConnectTimeout("timed out"))
        fake_web.page("https://www.facebook.com/cafex", page(), status=500)
        venue = Venue(id="x", name="Café X", lat=0, lon=0, website="https://cafe.test/",
                      facebook="https://www.facebook.com/cafex")
        assert self.run(fake_web, venue) == []

    def test_no_web_presence(self, fake_web):
        assert self.run(fake_web, Venue(id="x", name="X", lat=0, lon=0)) == []
        assert fake_web.requests == []
