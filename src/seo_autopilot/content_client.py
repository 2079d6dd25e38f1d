"""
Content generator client.

Page copy is produced by an external chat-completions endpoint; the
pipeline only consumes the structured fields.  The model is used for copy
only, never for decisions.  Unparseable replies degrade to template
content instead of failing the action.
"""
from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import requests

from .errors import ContentGenerationError

logger = logging.getLogger(__name__)

TRUST_SIGNALS = (
    "vetted pros",
    "background checked",
    "licensed professionals",
    "instant response",
    "same-day service",
    "free quotes",
    "satisfaction guaranteed",
    "local experts",
    "verified reviews",
    "insured professionals",
)
ACTION_VERBS = ("Find", "Hire", "Connect with", "Get", "Book", "Request", "Compare", "Discover")

_FENCED_JSON_RE = re.compile(r"```(?:json)?\s*\n?([\s\S]*?)\n?```")

_PAGE_KEYS = ("title", "meta_description", "h1", "intro", "benefits", "faqs", "cta")


def _display(value: str) -> str:
    return value.replace("-", " ").title()


def fallback_page_content(service: str, location: str, raw_text: str = "") -> Dict[str, Any]:
    name = _display(service)
    where = _display(location)
    return {
        "title": f"{name} in {where} - Professional Service",
        "meta_description": (
            f"Find trusted {service.replace('-', ' ')} professionals in {where}. "
            "Get free quotes from verified experts."
        ),
        "h1": f"{name} Services in {where}",
        "intro": raw_text[:500],
        "benefits": [],
        "faqs": [],
        "cta": "Get started today!",
    }


def fallback_meta(service: str, location: str, *, variant: int = 0) -> Dict[str, str]:
    verb = ACTION_VERBS[variant % len(ACTION_VERBS)]
    signal = TRUST_SIGNALS[variant % len(TRUST_SIGNALS)]
    name = service.replace("-", " ")
    where = _display(location)
    return {
        "title": f"{verb} {name.title()} in {where} | {signal.title()}",
        "meta_description": (
            f"{verb} {name} pros in {where}: {signal}, {TRUST_SIGNALS[(variant + 5) % len(TRUST_SIGNALS)]}. "
            "Compare quotes and book today."
        ),
    }


def parse_content_json(text: str) -> Optional[Dict[str, Any]]:
    """Extract a JSON object from a reply, tolerating ```json fences."""
    match = _FENCED_JSON_RE.search(text or "")
    candidate = match.group(1) if match else (text or "")
    try:
        payload = json.loads(candidate)
    except json.JSONDecodeError:
        return None
    return payload if isinstance(payload, dict) else None


def _normalise_keys(payload: Dict[str, Any]) -> Dict[str, Any]:
    # Models often answer in camelCase.
    aliases = {"metaDescription": "meta_description", "description": "meta_description"}
    return {aliases.get(k, k): v for k, v in payload.items()}


@dataclass
class ContentGeneratorClient:
    api_base: str
    api_key: str
    model: str = "gpt-4o-mini"
    timeout_s: float = 30.0

    @classmethod
    def from_settings(cls, settings) -> "ContentGeneratorClient":
        return cls(
            api_base=settings.content_api_base.rstrip("/"),
            api_key=settings.content_api_key,
            model=settings.content_model,
            timeout_s=settings.content_timeout_s,
        )

    @property
    def configured(self) -> bool:
        return bool(self.api_base and self.api_key)

    def _complete(self, system: str, prompt: str, *, temperature: float) -> str:
        if not self.configured:
            raise ContentGenerationError("Content generator not configured (SEO_CONTENT_API_KEY)")
        url = f"{self.api_base}/chat/completions"
        try:
            resp = requests.post(
                url,
                headers={
                    "Authorization": f"Bearer {self.api_key}",
                    "Content-Type": "application/json",
                    "User-Agent": "seo-autopilot/0.1",
                },
                json={
                    "model": self.model,
                    "messages": [
                        {"role": "system", "content": system},
                        {"role": "user", "content": prompt},
                    ],
                    "temperature": temperature,
                    "max_tokens": 1500,
                },
                timeout=self.timeout_s,
            )
            resp.raise_for_status()
            payload = resp.json()
        except requests.exceptions.RequestException as exc:
            raise ContentGenerationError(f"Content request failed: {exc}") from exc
        except ValueError as exc:
            raise ContentGenerationError(f"Content response is not JSON: {exc}") from exc

        try:
            return str(payload["choices"][0]["message"]["content"])
        except (KeyError, IndexError, TypeError) as exc:
            raise ContentGenerationError(f"Unexpected content payload: {payload!r}") from exc

    def generate_page(
        self,
        service: str,
        location: str,
        *,
        state: Optional[str] = None,
        query: Optional[str] = None,
    ) -> Dict[str, Any]:
        where = f"{location}, {state}" if state else location
        prompt = (
            "Generate SEO-optimized content for a home services marketplace page.\n\n"
            f"Service: {service}\n"
            f"Location: {where}\n"
            f'Target keyword: "{query or f"{service} in {location}"}"\n\n'
            "Create: an H1 (50-60 chars), a meta description (150-160 chars), an opening "
            "paragraph (100-150 words), 3-5 benefits, 3-5 FAQs and a call to action.\n"
            "Format: JSON with keys: " + ", ".join(_PAGE_KEYS)
        )
        text = self._complete(
            "You are an expert SEO content writer for a home services marketplace.",
            prompt,
            temperature=0.7,
        )
        parsed = parse_content_json(text)
        if parsed is None:
            logger.warning("Content reply for %s/%s was not JSON; using fallback", service, location)
            return fallback_page_content(service, location, text)
        content = fallback_page_content(service, location)
        content.update(_normalise_keys(parsed))
        return content

    def generate_meta(
        self,
        service: str,
        location: str,
        *,
        position: float,
        ctr: float,
        expected_ctr: float,
        query: Optional[str] = None,
    ) -> Dict[str, str]:
        prompt = (
            "Rewrite SEO meta tags to improve click-through rate.\n\n"
            f"Service: {service}\nLocation: {location}\n"
            f"Current Position: {position:.1f}\n"
            f"Current CTR: {ctr * 100:.2f}% (Expected: {expected_ctr * 100:.2f}%)\n"
            f'Target Query: "{query or f"{service} in {location}"}"\n\n'
            "Title 50-60 characters including the location; description 150-160 characters "
            "with a clear call to action.\nFormat: JSON with keys: title, description"
        )
        text = self._complete(
            "You are an expert SEO copywriter specializing in meta tags that drive high CTR.",
            prompt,
            temperature=0.8,
        )
        parsed = parse_content_json(text)
        if parsed is None:
            logger.warning("Meta reply for %s/%s was not JSON; using fallback", service, location)
            return fallback_meta(service, location)
        parsed = _normalise_keys(parsed)
        meta = fallback_meta(service, location)
        for key in ("title", "meta_description"):
            if isinstance(parsed.get(key), str) and parsed[key].strip():
                meta[key] = parsed[key].strip()
        return meta

    def generate_expansion(
        self,
        service: str,
        location: str,
        *,
        existing_headings: List[str],
    ) -> Dict[str, Any]:
        prompt = (
            f"Expand a {service} service page for {location}.\n"
            f"Existing sections: {', '.join(existing_headings) or 'none'}\n"
            "Add 2-3 new sections that answer local customer questions, plus 2-3 FAQs.\n"
            "Format: JSON with keys: sections (list of {heading, body}), faqs (list of {question, answer})"
        )
        text = self._complete(
            "You are an expert SEO content writer for a home services marketplace.",
            prompt,
            temperature=0.7,
        )
        parsed = parse_content_json(text)
        if parsed is None:
            raise ContentGenerationError(f"Expansion reply for {service}/{location} was not JSON")
        sections = [s for s in parsed.get("sections") or [] if isinstance(s, dict) and s.get("heading")]
        faqs = [f for f in parsed.get("faqs") or [] if isinstance(f, dict) and f.get("question")]
        if not sections and not faqs:
            raise ContentGenerationError(f"Expansion reply for {service}/{location} had no content")
        return {"sections": sections, "faqs": faqs}
