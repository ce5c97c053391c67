"""
Tests for entry normalization and channel merging
"""
from channel_merger import is_trusted_logo, make_channel_id, normalize
from models import PlaylistEntry
import hashlib


TRUSTED = ["gitee.com", "github.com", "githubusercontent.com", "github.io"]


def entry(name, url, **tags):
    return PlaylistEntry(name=name, url=url, tags={k.replace('_', '-'): v for k, v in tags.items()})


class TestChannelId:

    def test_format(self):
        url = "http://a/cctv1.m3u8"
        digest = hashlib.md5(url.encode()).hexdigest()[:8]
        assert make_channel_id(0, "CCTV 1", url) == f"ch_0_CCTV_1_{digest}"

    def test_deterministic(self):
        assert make_channel_id(3, "Name", "http://x") == make_channel_id(3, "Name", "http://x")

    def test_slug_truncated(self):
        channel_id = make_channel_id(1, "A very long channel name indeed", "http://x")
        slug = channel_id.split("_", 2)[2].rsplit("_", 1)[0]
        assert len(slug) == 20

    def test_name_is_trimmed(self):
        assert make_channel_id(0, "  News  ", "http://x") == make_channel_id(0, "News", "http://x")


class TestTrustedLogo:

    def test_exact_host(self):
        assert is_trusted_logo("https://github.com/x/logo.png", TRUSTED)

    def test_subdomain(self):
        assert is_trusted_logo("https://raw.githubusercontent.com/x/logo.png", TRUSTED)
        assert is_trusted_logo("https://someone.github.io/logo.png", TRUSTED)

    def test_untrusted(self):
        assert not is_trusted_logo("http://cdn.example.com/logo.png", TRUSTED)
        assert not is_trusted_logo("http://notgithub.com/logo.png", TRUSTED)

    def test_empty_or_invalid(self):
        assert not is_trusted_logo("", TRUSTED)
        assert not is_trusted_logo("not a url", TRUSTED)


class TestNormalize:

    def test_two_entries_merge_into_one_channel(self):
        entries = [
            entry("CCTV-1", "http://a/1.m3u8", group_title="News", tvg_logo="http://cdn.example.com/1.png"),
            entry("CCTV-1", "http://b/1.m3u8", group_title="HD", tvg_logo="https://raw.githubusercontent.com/1.png"),
        ]
        channels, streams = normalize(entries, TRUSTED)

        assert len(channels) == 1
        channel = channels[0]
        assert channel.id == make_channel_id(0, "CCTV-1", "http://a/1.m3u8")
        assert channel.categories == {"News", "HD"}
        assert channel.logo_url == "https://raw.githubusercontent.com/1.png"

        assert [s.url for s in streams] == ["http://a/1.m3u8", "http://b/1.m3u8"]
        assert all(s.channel_id == channel.id for s in streams)

    def test_logo_fills_empty(self):
        entries = [
            entry("X", "http://a/1"),
            entry("X", "http://a/2", tvg_logo="http://cdn.example.com/x.png"),
        ]
        channels, _ = normalize(entries, TRUSTED)
        assert channels[0].logo_url == "http://cdn.example.com/x.png"

    def test_untrusted_logo_does_not_replace(self):
        entries = [
            entry("X", "http://a/1", tvg_logo="http://cdn.example.com/x.png"),
            entry("X", "http://a/2", tvg_logo="http://other.example.com/y.png"),
        ]
        channels, _ = normalize(entries, TRUSTED)
        assert channels[0].logo_url == "http://cdn.example.com/x.png"

    def test_trusted_logo_not_replaced_by_trusted(self):
        entries = [
            entry("X", "http://a/1", tvg_logo="https://gitee.com/a.png"),
            entry("X", "http://a/2", tvg_logo="https://github.com/b.png"),
        ]
        channels, _ = normalize(entries, TRUSTED)
        assert channels[0].logo_url == "https://gitee.com/a.png"

    def test_names_are_trimmed_for_grouping(self):
        entries = [entry(" News ", "http://a/1"), entry("News", "http://a/2")]
        channels, streams = normalize(entries, TRUSTED)
        assert len(channels) == 1
        assert channels[0].name == "News"
        assert len(streams) == 2

    def test_alternate_names_and_languages(self):
        entries = [
            entry("X", "http://a/1", tvg_name="X One", tvg_language="en"),
            entry("X", "http://a/2", tvg_name="X Uno", tvg_language="es"),
        ]
        channels, _ = normalize(entries, TRUSTED)
        assert channels[0].alternate_names == {"X One", "X Uno"}
        assert channels[0].languages == {"en", "es"}

    def test_country_from_first_entry_that_has_one(self):
        entries = [
            entry("X", "http://a/1"),
            entry("X", "http://a/2", tvg_country="CN"),
            entry("X", "http://a/3", tvg_country="HK"),
        ]
        channels, _ = normalize(entries, TRUSTED)
        assert channels[0].country == "CN"

    def test_streams_keep_their_own_headers(self):
        entries = [
            entry("X", "http://a/1", user_agent="UA1", referer="http://r1/"),
            entry("X", "http://a/2"),
        ]
        _, streams = normalize(entries, TRUSTED)
        assert streams[0].user_agent == "UA1"
        assert streams[0].http_referrer == "http://r1/"
        assert streams[1].user_agent is None
        assert streams[1].http_referrer is None

    def test_empty_names_form_one_group(self):
        entries = [entry("", "http://a/1"), entry("   ", "http://a/2"), entry("Y", "http://a/3")]
        channels, streams = normalize(entries, TRUSTED)
        assert [c.name for c in channels] == ["", "Y"]
        assert streams[0].channel_id == streams[1].channel_id

    def test_channel_order_is_first_seen(self):
        entries = [
            entry("B", "http://a/1"),
            entry("A", "http://a/2"),
            entry("B", "http://a/3"),
            entry("C", "http://a/4"),
        ]
        channels, streams = normalize(entries, TRUSTED)
        assert [c.name for c in channels] == ["B", "A", "C"]
        assert [s.url for s in streams] == ["http://a/1", "http://a/2", "http://a/3", "http://a/4"]

    def test_ids_unique(self):
        entries = [entry(f"Ch {i % 7}", f"http://a/{i}") for i in range(40)]
        channels, _ = normalize(entries, TRUSTED)
        ids = [c.id for c in channels]
        assert len(ids) == len(set(ids)) == 7

    def test_deterministic_under_attribute_reordering(self):
        first = PlaylistEntry(name="X", url="http://a/1", tags={"group-title": "G", "tvg-logo": "http://l/1.png"})
        reordered = PlaylistEntry(name="X", url="http://a/1", tags={"tvg-logo": "http://l/1.png", "group-title": "G"})
        assert normalize([first], TRUSTED) == normalize([reordered], TRUSTED)

    def test_monotonic_growth(self):
        base = [
            entry("X", "http://a/1", group_title="G1", tvg_name="Alt1", tvg_logo="http://cdn/1.png"),
        ]
        extra = base + [
            entry("X", "http://a/2", group_title="G2", tvg_name="Alt2"),
        ]
        before, _ = normalize(base, TRUSTED)
        after, _ = normalize(extra, TRUSTED)
        assert before[0].categories <= after[0].categories
        assert before[0].alternate_names <= after[0].alternate_names
        assert after[0].logo_url == before[0].logo_url

    def test_empty_input(self):
        assert normalize([], TRUSTED) == ([], [])

    def test_default_trusted_hosts_from_settings(self):
        entries = [
            entry("X", "http://a/1", tvg_logo="http://cdn.example.com/x.png"),
            entry("X", "http://a/2", tvg_logo="https://github.com/x.png"),
        ]
        channels, _ = normalize(entries)
        assert channels[0].logo_url == "https://github.com/x.png"


class TestIngestScenario:

    def test_parsed_playlist_merges_by_display_name(self):
        from m3u_parser import parse_playlist
        text = (
            '#EXTM3U\n'
            '#EXTINF:-1 tvg-name="A",Channel A\nhttp://x/a.m3u8\n'
            '#EXTINF:-1 group-title="News",Channel A\nhttp://x/b.m3u8\n'
        )
        channels, streams = normalize(parse_playlist(text), TRUSTED)

        assert len(channels) == 1
        assert channels[0].name == "Channel A"
        assert channels[0].categories == {"News"}
        assert channels[0].alternate_names == {"A"}
        assert [s.url for s in streams] == ["http://x/a.m3u8", "http://x/b.m3u8"]
        assert {s.channel_id for s in streams} == {channels[0].id}
