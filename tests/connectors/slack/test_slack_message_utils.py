"""Tests for Slack mrkdwn conversion."""

import pytest

from connectors.slack.slack_message_utils import (
    convert_mrkdwn,
    extract_mentions,
    split_code_segments,
)


class TestConvertMrkdwn:
    def test_user_mention_uses_lookup_then_label_then_id(self):
        text = "hi <@U1> and <@U2|bob> and <@U3>"

        converted = convert_mrkdwn(text, user_names={"U1": "alice"})

        assert converted == "hi @alice and @bob and @U3"

    def test_channel_mentions(self):
        converted = convert_mrkdwn("see <#C100|general> and <#C200>", channel_names={"C200": "random"})

        assert converted == "see #general and #random"

    def test_special_and_subteam_mentions(self):
        converted = convert_mrkdwn("<!here> <!channel> <!subteam^S1|@oncall>")

        assert converted == "@here @channel @oncall"

    def test_links(self):
        text = "<https://example.com|Example> <https://example.com/plain> <mailto:a@b.co|a@b.co>"

        assert convert_mrkdwn(text) == (
            "[Example](https://example.com) https://example.com/plain [a@b.co](mailto:a@b.co)"
        )

    def test_emphasis_characters_inside_urls_are_kept(self):
        text = "<https://example.com/*draft*/doc|spec> and <https://example.com/~a~/b>"

        assert convert_mrkdwn(text) == (
            "[spec](https://example.com/*draft*/doc) and https://example.com/~a~/b"
        )

    def test_emphasis_next_to_a_link(self):
        converted = convert_mrkdwn("*read* <https://x.io/*y*|this> ~now~")

        assert converted == "**read** [this](https://x.io/*y*) ~~now~~"

    def test_emphasis(self):
        assert convert_mrkdwn("*bold* and ~gone~ and _italic_") == "**bold** and ~~gone~~ and _italic_"

    def test_arithmetic_is_not_bold(self):
        assert convert_mrkdwn("2 * 3 * 4") == "2 * 3 * 4"

    def test_date_tokens_use_fallback(self):
        assert convert_mrkdwn("due <!date^1712345678^{date}|Apr 5>") == "due Apr 5"

    def test_code_is_copied_verbatim(self):
        text = "run `<@U1> *x*` then"

        assert convert_mrkdwn(text, user_names={"U1": "alice"}) == "run `<@U1> *x*` then"

    def test_fenced_block_gets_its_own_lines(self):
        text = "before```*not bold*\n<@U1>```after"

        assert convert_mrkdwn(text) == "before\n```\n*not bold*\n<@U1>\n```\nafter"

    def test_html_entities_stay_encoded(self):
        assert convert_mrkdwn("a &lt; b &amp;&amp; c &gt; d") == "a &lt; b &amp;&amp; c &gt; d"

    def test_empty(self):
        assert convert_mrkdwn("") == ""

    @pytest.mark.parametrize(
        "text",
        [
            "hi <@U1|alice>, see <#C1|general> and <https://x.io|docs>",
            "*bold* ~strike~ <!here>",
            "text```code *x*```more `inline`",
            "a &lt;b&gt; &amp; c",
            "<https://example.com/*draft*/doc|spec> <https://example.com/~a~>",
        ],
    )
    def test_conversion_is_idempotent(self, text):
        once = convert_mrkdwn(text, user_names={"U1": "alice"})

        assert convert_mrkdwn(once, user_names={"U1": "alice"}) == once


class TestExtractMentions:
    def test_mentions_in_order_without_duplicates(self):
        users, channels = extract_mentions("<@U2> <@U1|a> <@U2> <#C9> <#C1|x>")

        assert users == ["U2", "U1"]
        assert channels == ["C9", "C1"]

    def test_mentions_inside_code_are_ignored(self):
        users, channels = extract_mentions("`<@U1>` ```<#C1>``` <@U2>")

        assert users == ["U2"]
        assert channels == []


class TestSplitCodeSegments:
    def test_segments_preserve_order(self):
        segments = split_code_segments("a `b` c ```d``` e")

        assert segments == [
            ("a ", False),
            ("`b`", True),
            (" c ", False),
            ("```d```", True),
            (" e", False),
        ]
