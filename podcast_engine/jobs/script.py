"""Claude-powered podcast script generation from a list of articles."""

from __future__ import annotations

import logging
from typing import Any

import anthropic
from anthropic import Anthropic
from anthropic.types import TextBlock

from podcast_engine.config import settings
from podcast_engine.errors import ScriptGenerationError, ValidationError

logger = logging.getLogger(__name__)

HOSTS = ("Alice", "Bob")

STYLE_GUIDE = (
    "Tone and style:\n"
    "- Conversational and engaging, as if speaking directly to the listener.\n"
    "- Balanced exchange between both hosts.\n"
    "- Clear language; explain any jargon.\n"
    "- Never say things like \"Segment 1\" or \"Section 2\" in the dialogue.\n"
    "- Always refer to the hosts by name (Alice and Bob).\n\n"
    "Format every line as dialogue, one speaker turn per line:\n"
    "Alice: ...\n"
    "Bob: ...\n"
    "Do not add stage directions, headings or narration."
)


def validate_articles(articles: list[dict[str, Any]]) -> None:
    """Reject article lists the script generator cannot work with.

    Raises:
        ValidationError: Empty list, or an article without a title or body.
    """
    if not articles:
        raise ValidationError("At least one article is required")
    for i, article in enumerate(articles):
        if not isinstance(article, dict):
            raise ValidationError(f"Article at index {i} must be an object")
        if not article.get("title"):
            raise ValidationError(f"Article at index {i} is missing a title")
        if not (article.get("content") or article.get("summary")):
            raise ValidationError(f"Article at index {i} is missing both content and summary")


def estimate_minutes(article_count: int) -> int:
    """Target podcast length: four minutes per article plus two for intro and outro."""
    return 4 * article_count + 2


class ScriptGenerator:
    """Writes a two-host dialogue script in parts: intro, one part per article, outro."""

    def __init__(
        self,
        client: Anthropic | None = None,
        model: str | None = None,
        max_tokens: int | None = None,
    ) -> None:
        self._client = client
        self.model = model or settings.llm_model
        self.max_tokens = max_tokens or settings.script_max_tokens

    @property
    def client(self) -> Anthropic:
        if self._client is None:
            self._client = Anthropic(api_key=settings.anthropic_api_key)
        return self._client

    def _complete(self, prompt: str, max_tokens: int) -> str:
        try:
            response = self.client.messages.create(
                model=self.model,
                max_tokens=max_tokens,
                system=f"You are two podcast hosts, {HOSTS[0]} and {HOSTS[1]}.\n\n{STYLE_GUIDE}",
                messages=[{"role": "user", "content": prompt}],
            )
        except anthropic.APIError as exc:
            raise ScriptGenerationError(f"generation failed: {exc}") from exc

        text = "".join(block.text for block in response.content if isinstance(block, TextBlock)).strip()
        if not text:
            raise ScriptGenerationError("generation failed: empty response")
        return text

    def generate(self, articles: list[dict[str, Any]]) -> str:
        """Generate the full script for ``articles``.

        Raises:
            ValidationError: The article list is malformed.
            ScriptGenerationError: The model call failed or returned nothing.
        """
        validate_articles(articles)
        titles = [a["title"] for a in articles]
        topic_list = "\n".join(f"{i + 1}. {t}" for i, t in enumerate(titles))

        parts = [
            self._complete(
                "Write ONLY the introduction (about one minute) of an episode covering:\n"
                f"{topic_list}\n\n"
                "Alice greets the listeners and introduces Bob, then both preview every topic.",
                max_tokens=1000,
            )
        ]
        for i, article in enumerate(articles):
            body = article.get("summary") or article.get("content")
            logger.info("Generating script section %d/%d: %s", i + 1, len(articles), article["title"])
            parts.append(
                self._complete(
                    "Write the part of the episode (about four minutes) discussing ONLY this article.\n"
                    f"Title: {article['title']}\n"
                    f"Content: {body}\n\n"
                    f'Open with "Let\'s discuss the article: {article["title"]}." '
                    "Cover background, current relevance, open debates and the outlook. "
                    "End with \"That's all for this article.\"",
                    max_tokens=self.max_tokens,
                )
            )
        parts.append(
            self._complete(
                "Write ONLY the closing (about one minute) of an episode that covered:\n"
                f"{topic_list}\n\n"
                "Recap the key takeaways and thank the listeners.",
                max_tokens=1000,
            )
        )
        script = "\n".join(parts)
        logger.info("Generated script of %d characters for %d articles", len(script), len(articles))
        return script
