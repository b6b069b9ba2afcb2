import unittest
from pathlib import Path

PUBLIC_DIR = Path(__file__).resolve().parents[1] / "public"


class PlaylistPageUiTests(unittest.TestCase):
    """Keep the polling page from turning stored links into script."""

    def test_links_are_gated_on_web_protocols(self) -> None:
        """Only http and https URLs may be assigned to an anchor href."""

        html = (PUBLIC_DIR / "index.html").read_text(encoding="utf-8")
        self.assertIn("new URL(url).protocol", html)
        self.assertIn("protocol !== 'http:' && protocol !== 'https:'", html)
        self.assertNotIn("link.href = v.url", html)
        self.assertEqual(html.count(".href = "), 1)

    def test_stored_text_is_never_parsed_as_html(self) -> None:
        """Submitted values are rendered through textContent only."""

        html = (PUBLIC_DIR / "index.html").read_text(encoding="utf-8")
        self.assertNotIn("innerHTML = `", html)
        self.assertNotIn("insertAdjacentHTML", html)
        self.assertIn("span.textContent = url;", html)

    def test_page_polls_the_list_endpoint(self) -> None:
        html = (PUBLIC_DIR / "index.html").read_text(encoding="utf-8")
        self.assertIn("fetch('/api/videos')", html)
        self.assertIn("setInterval(refresh", html)


if __name__ == "__main__":
    unittest.main()
