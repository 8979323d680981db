import unittest

from technews_relay.body_parser import (
    UNDECODABLE_BODY,
    decode_transfer_encoding,
    emphasize_headings,
    html_to_text,
    normalize_body,
    parse_subject,
    strip_boilerplate,
)


class TestNormalizeBody(unittest.TestCase):
    def test_together_with_marker_line_removed(self):
        raw = b"Sponsor intro\nTogether With Acme\nREAL CONTENT\nMore details here"
        result = normalize_body(raw, "7bit")

        self.assertTrue(result.lstrip("*").startswith("REAL CONTENT"))
        self.assertNotIn("Acme", result)
        self.assertNotIn("Sponsor intro", result)

    def test_all_caps_heading_is_bolded(self):
        result = normalize_body(b"TOP STORIES\nSome story here", "7bit")
        self.assertEqual(result, "*TOP STORIES*\nSome story here")

    def test_heading_with_digits_and_ampersand(self):
        result = normalize_body(b"AI & ML 2025\nBody text", "7bit")
        self.assertEqual(result, "*AI & ML 2025*\nBody text")

    def test_undecodable_utf8_returns_placeholder(self):
        self.assertEqual(normalize_body(b"\xff\xfe\xfa", "7bit"), UNDECODABLE_BODY)

    def test_bad_base64_returns_placeholder(self):
        self.assertEqual(normalize_body(b"abc", "base64"), UNDECODABLE_BODY)

    def test_unknown_transfer_encoding_returns_placeholder(self):
        self.assertEqual(normalize_body(b"hello", "x-uuencode"), UNDECODABLE_BODY)

    def test_quoted_printable_soft_breaks_joined(self):
        result = normalize_body(b"Hello=\n world", "quoted-printable")
        self.assertEqual(result, "Hello world")

    def test_non_ascii_removed(self):
        result = normalize_body("Café news".encode("utf-8"), "7bit")
        self.assertEqual(result, "Caf news")

    def test_tldr_start_and_referral_footer(self):
        raw = (
            b"Preamble junk\n"
            b"TLDR Daily 2025\n"
            b"Story one\n"
            b"Love TLDR? Tell your friends and get rewards!\n"
            b"Footer"
        )
        result = normalize_body(raw, "7bit")
        self.assertEqual(result, "TLDR Daily 2025\nStory one")

    def test_feedback_footer_is_case_insensitive(self):
        result = normalize_body(b"Story one\nHow did we do today?\nUnsubscribe", "7bit")
        self.assertEqual(result, "Story one")

    def test_mime_artifacts_removed(self):
        raw = (
            b"--boundary123\n"
            b"Content-Type: text/plain; charset=utf-8\n"
            b"Content-Transfer-Encoding: 7bit\n"
            b"\n"
            b"Hello readers\n"
            b"--boundary123--\n"
        )
        self.assertEqual(normalize_body(raw, "7bit"), "Hello readers")

    def test_image_urls_removed(self):
        result = normalize_body(b"See https://cdn.example.com/pic.png?w=600 here", "7bit")
        self.assertNotIn("pic.png", result)
        self.assertIn("See", result)

    def test_byline_lines_dropped(self):
        result = normalize_body(b"Story one\nby Jane Doe, 4 minute read\nStory two", "7bit")
        self.assertEqual(result, "Story one\nStory two")

    def test_blank_lines_collapsed(self):
        result = normalize_body(b"One  \n\n\n\nTwo\r\n\r\nThree", "7bit")
        self.assertEqual(result, "One\nTwo\nThree")

    def test_stray_brackets_removed(self):
        self.assertEqual(normalize_body(b"[Sponsor]\nText", "7bit"), "Sponsor\nText")

    def test_html_link_rendered_as_slack_link(self):
        raw = (
            b'<html><body><p><a href="https://example.com/story">Read the story</a></p>'
            b"</body></html>"
        )
        result = normalize_body(raw, "7bit")
        self.assertIn("<https://example.com/story|Read the story>", result)

    def test_html_image_link_keeps_label(self):
        raw = (
            b'<html><body><p><a href="https://cdn.x.com/banner.png?w=600">See the chart</a></p>'
            b"</body></html>"
        )
        result = normalize_body(raw, "7bit")
        self.assertEqual(result, "See the chart")

    def test_html_byline_link_not_rendered(self):
        raw = (
            b"<html><body><p>Big launch today</p>"
            b'<p>by <a href="https://example.com/jane">Jane Doe</a></p>'
            b"</body></html>"
        )
        result = normalize_body(raw, "7bit")
        self.assertIn("Big launch today", result)
        self.assertNotIn("example.com/jane", result)
        self.assertNotIn("Jane Doe", result)

    def test_html_heading_is_upper_cased_and_bolded(self):
        raw = b"<html><body><h2>Top stories</h2><p>Rust ships today</p></body></html>"
        result = normalize_body(raw, "7bit")
        self.assertIn("*TOP STORIES*", result)
        self.assertIn("Rust ships today", result)

    def test_html_quoted_printable_body(self):
        raw = b'<html><body><p>Hello=20<b>world</b></p>\n<script>var x =3D 1;</script></body></html>'
        result = normalize_body(raw)
        self.assertIn("Hello *world*", result)
        self.assertNotIn("var x", result)

    def test_str_input_accepted(self):
        self.assertEqual(normalize_body("Plain text", "7bit"), "Plain text")


class TestHtmlToText(unittest.TestCase):
    def test_long_lines_are_wrapped(self):
        html = "<html><body><p>" + "word " * 200 + "</p></body></html>"
        text = html_to_text(html, wrap_width=50)
        lines = [line for line in text.split("\n") if line]
        self.assertGreater(len(lines), 1)
        for line in lines:
            self.assertLessEqual(len(line), 50)

    def test_images_and_comments_dropped(self):
        html = '<html><body><!-- tracking --><img src="https://x.com/a.gif"><p>Text</p></body></html>'
        text = html_to_text(html)
        self.assertNotIn("tracking", text)
        self.assertNotIn("a.gif", text)
        self.assertIn("Text", text)

    def test_anchor_without_href_keeps_text(self):
        text = html_to_text("<html><body><p><a>Just text</a></p></body></html>")
        self.assertIn("Just text", text)
        self.assertNotIn("<", text)

    def test_empty_input(self):
        self.assertEqual(html_to_text(""), "")


class TestStages(unittest.TestCase):
    def test_decode_identity(self):
        self.assertEqual(decode_transfer_encoding(b"abc", "8bit"), b"abc")

    def test_decode_base64(self):
        self.assertEqual(decode_transfer_encoding(b"aGVsbG8=", "BASE64"), b"hello")

    def test_boilerplate_no_markers_is_noop(self):
        self.assertEqual(strip_boilerplate("Nothing to see"), "Nothing to see")

    def test_emphasize_ignores_mixed_case(self):
        self.assertEqual(emphasize_headings("Mixed Case\nUPPER"), "Mixed Case\n*UPPER*")


class TestParseSubject(unittest.TestCase):
    def test_plain_subject(self):
        self.assertEqual(parse_subject(b"Subject: Hello World\r\n\r\n"), "*Hello World*")

    def test_missing_subject(self):
        self.assertEqual(parse_subject(b"\r\n"), "*No Subject*")
        self.assertEqual(parse_subject(b""), "*No Subject*")

    def test_encoded_word_subject(self):
        self.assertEqual(parse_subject(b"Subject: =?utf-8?q?Caf=C3=A9?=\r\n\r\n"), "*Café*")

    def test_folded_subject(self):
        self.assertEqual(parse_subject(b"Subject: Long\r\n subject line\r\n\r\n"), "*Long subject line*")


if __name__ == "__main__":
    unittest.main()
