"""Cluster labeling.

Labels are best effort: each cluster is labeled independently, and any failure
degrades that cluster alone to a ``Cluster N`` placeholder.

Classes:
    ClusterDocument: Representative texts for one cluster.
    LabelingContext: Zone language and operational context passed to labelers.
    ClusterLabel: Label, keywords, sentiment, and rationale for one cluster.
    ClusterLabeler: Protocol implemented by labeling strategies.
    OpenAILabeler: Asks a chat model for a JSON label.
    KeywordLabeler: Deterministic labels built from TF-IDF keywords.

Functions:
    extract_cluster_keywords(texts_by_cluster, top_k): TF-IDF keywords per cluster.
    select_representatives(...): Pick the posts shown to the labeler.
    parse_label_response(text): Tolerant parser for model JSON output.
    label_clusters(...): Label every cluster with bounded concurrency.
"""

from __future__ import annotations

import asyncio
import json
import logging
import math
import re
from collections import Counter
from dataclasses import dataclass, field
from typing import Any, Optional, Protocol, Sequence

import numpy as np
from sklearn.feature_extraction.text import ENGLISH_STOP_WORDS, TfidfVectorizer

from opinion_map.core.config import get_settings
from opinion_map.services.openai_client import OpenAIService
from opinion_map.utils.text import collapse_whitespace

_LOGGER = logging.getLogger(__name__)

MAX_KEYWORDS = 8
MAX_LABEL_LENGTH = 80
MAX_REASONING_LENGTH = 600

SOURCE_AI = "ai"
SOURCE_KEYWORDS = "keywords"
SOURCE_PLACEHOLDER = "placeholder"

LANGUAGE_NAMES = {
    "en": "English",
    "fr": "French",
    "es": "Spanish",
    "pt": "Portuguese",
    "de": "German",
    "it": "Italian",
    "ar": "Arabic",
}

_FALLBACK_MESSAGES = {
    "en": ("This cluster discusses topics related to", "Cluster analysis unavailable."),
    "fr": ("Ce cluster traite de sujets liés à", "Analyse du cluster non disponible."),
    "es": ("Este cluster discute temas relacionados con", "Análisis del cluster no disponible."),
    "pt": ("Este cluster discute tópicos relacionados a", "Análise do cluster não disponível."),
    "de": ("Dieser Cluster diskutiert Themen im Zusammenhang mit", "Cluster-Analyse nicht verfügbar."),
    "it": ("Questo cluster discute argomenti relativi a", "Analisi del cluster non disponibile."),
}

_FRENCH_STOP_WORDS = {
    "le", "la", "les", "un", "une", "des", "du", "de", "et", "ou", "mais", "en", "dans",
    "sur", "au", "aux", "pour", "par", "avec", "sans", "ce", "cet", "cette", "ces", "je",
    "tu", "il", "elle", "nous", "vous", "ils", "elles", "est", "sont", "être", "ai", "ont",
    "avoir", "fait", "pas", "plus", "qui", "que", "quoi", "ne", "se", "sa", "son", "ses",
    "leur", "leurs", "on", "y", "à", "ça",
}
_SOCIAL_STOP_WORDS = {"rt", "https", "http", "com", "www", "amp", "co", "author", "hashtags"}
STOP_WORDS = sorted(set(ENGLISH_STOP_WORDS) | _FRENCH_STOP_WORDS | _SOCIAL_STOP_WORDS)

_TOKEN_RE = re.compile(r"(?u)\b\w\w+\b")
_URL_RE = re.compile(r"https?://\S+")
_CODE_FENCE_RE = re.compile(r"```(?:json)?\s*([\s\S]*?)\s*```")
_OBJECT_RE = re.compile(r"\{[\s\S]*\}")
_TRAILING_COMMA_RE = re.compile(r",(\s*[}\]])")
_CONTROL_RE = re.compile(r"[\u0000-\u0008\u000b\u000c\u000e-\u001f\u007f-\u009f]")

SYSTEM_PROMPT = (
    "You are an analyst identifying opinion clusters in social media data for a "
    "monitoring platform. Answer with a single JSON object and nothing else."
)


@dataclass(slots=True)
class ClusterDocument:
    cluster_id: int
    texts: list[str]
    size: int


@dataclass(slots=True)
class LabelingContext:
    language: str = "en"
    operational_context: Optional[str] = None

    @property
    def language_name(self) -> str:
        return LANGUAGE_NAMES.get(self.language, LANGUAGE_NAMES["en"])


@dataclass(slots=True)
class ClusterLabel:
    cluster_id: int
    label: str
    keywords: list[str] = field(default_factory=list)
    sentiment: Optional[float] = None
    reasoning: Optional[str] = None
    source: str = SOURCE_PLACEHOLDER


class ClusterLabeler(Protocol):
    async def label(
        self,
        cluster: ClusterDocument,
        keywords: list[str],
        context: LabelingContext,
    ) -> ClusterLabel: ...


def _clean_for_keywords(text: str) -> str:
    return collapse_whitespace(_URL_RE.sub(" ", text or ""))


def _frequency_keywords(texts: Sequence[str], top_k: int) -> list[str]:
    stop = set(STOP_WORDS)
    counter: Counter[str] = Counter()
    for text in texts:
        for token in _TOKEN_RE.findall(_clean_for_keywords(text).lower()):
            if token not in stop and not token.isdigit():
                counter[token] += 1
    return [token for token, _ in counter.most_common(top_k)]


def extract_cluster_keywords(
    texts_by_cluster: dict[int, list[str]],
    *,
    top_k: int = MAX_KEYWORDS,
) -> dict[int, list[str]]:
    """Return between one and ``top_k`` keywords for every cluster.

    Terms are ranked by their mean TF-IDF weight over the cluster's posts, with
    the vocabulary fitted on all clusters together. Clusters whose posts yield
    no usable term get ``cluster N`` so the list is never empty.
    """

    top_k = max(1, min(top_k, MAX_KEYWORDS))
    labels = [label for label in texts_by_cluster if label >= 0]
    texts: list[str] = []
    owners: list[int] = []
    for label in labels:
        for text in texts_by_cluster[label]:
            texts.append(_clean_for_keywords(text))
            owners.append(label)

    keywords_by_label: dict[int, list[str]] = {}
    matrix = None
    feature_names = np.array([])
    if any(texts):
        vectorizer = TfidfVectorizer(
            max_features=512,
            ngram_range=(1, 2),
            stop_words=STOP_WORDS,
            sublinear_tf=True,
        )
        try:
            matrix = vectorizer.fit_transform(texts)
            feature_names = np.array(vectorizer.get_feature_names_out())
        except ValueError:
            # every token was a stop word
            matrix = None

    owner_array = np.array(owners)
    for label in labels:
        keywords: list[str] = []
        if matrix is not None:
            indices = np.flatnonzero(owner_array == label)
            if indices.size:
                weights = np.asarray(matrix[indices].mean(axis=0)).ravel()
                order = weights.argsort()[::-1]
                keywords = [str(feature_names[i]) for i in order if weights[i] > 0][:top_k]
        if not keywords:
            keywords = _frequency_keywords(texts_by_cluster[label], top_k)
        keywords_by_label[label] = keywords or [f"cluster {label}"]
    return keywords_by_label


def select_representatives(
    member_indices: Sequence[int],
    *,
    centroid_distances: Sequence[float],
    engagement: Sequence[int],
    limit: int,
) -> list[int]:
    """Half of the picks are nearest the centroid, the rest are the most engaged members."""

    members = list(member_indices)
    if len(members) <= limit:
        return sorted(members, key=lambda idx: centroid_distances[idx])

    nearest = sorted(members, key=lambda idx: centroid_distances[idx])
    engaged = sorted(members, key=lambda idx: (-engagement[idx], centroid_distances[idx]))
    picked: list[int] = []
    seen: set[int] = set()
    for idx in nearest[: max(1, math.ceil(limit / 2))]:
        picked.append(idx)
        seen.add(idx)
    for idx in engaged + nearest:
        if len(picked) >= limit:
            break
        if idx not in seen:
            picked.append(idx)
            seen.add(idx)
    return picked


def parse_label_response(text: str) -> dict[str, Any]:
    """Parse a model answer into ``label``, ``sentiment`` and ``reasoning``.

    Accepts code fences, surrounding prose, trailing commas and a one-element
    array. Raises ``ValueError`` when no usable label or sentiment is present.
    """

    payload = (text or "").strip()
    fenced = _CODE_FENCE_RE.search(payload)
    if fenced:
        payload = fenced.group(1).strip()
    obj = _OBJECT_RE.search(payload)
    if obj:
        payload = obj.group(0)
    payload = _TRAILING_COMMA_RE.sub(r"\1", _CONTROL_RE.sub("", payload)).strip()

    try:
        parsed = json.loads(payload)
    except json.JSONDecodeError as exc:
        raise ValueError(f"Label response is not valid JSON: {exc}") from exc

    if isinstance(parsed, list):
        if not parsed:
            raise ValueError("Label response is an empty array")
        parsed = parsed[0]
    if not isinstance(parsed, dict):
        raise ValueError("Label response is not an object")

    label = parsed.get("label")
    if not isinstance(label, str) or len(label.strip()) < 2:
        raise ValueError(f"Invalid label in response: {label!r}")

    sentiment = parsed.get("sentiment")
    if isinstance(sentiment, bool) or not isinstance(sentiment, (int, float)):
        raise ValueError(f"Invalid sentiment in response: {sentiment!r}")
    if not math.isfinite(float(sentiment)):
        raise ValueError("Sentiment is not finite")

    reasoning = parsed.get("description") or parsed.get("reasoning") or ""
    if not isinstance(reasoning, str):
        reasoning = str(reasoning)

    return {
        "label": label.strip()[:MAX_LABEL_LENGTH],
        "sentiment": max(-1.0, min(1.0, float(sentiment))),
        "reasoning": reasoning.strip()[:MAX_REASONING_LENGTH],
    }


def placeholder_label(cluster_id: int, keywords: list[str], language: str) -> ClusterLabel:
    related, unavailable = _FALLBACK_MESSAGES.get(language, _FALLBACK_MESSAGES["en"])
    reasoning = f"{related} {', '.join(keywords[:5])}." if keywords else unavailable
    return ClusterLabel(
        cluster_id=cluster_id,
        label=f"Cluster {cluster_id}",
        keywords=list(keywords),
        sentiment=None,
        reasoning=reasoning,
        source=SOURCE_PLACEHOLDER,
    )


class KeywordLabeler:
    """Labels clusters with their top keywords; used when no language model is configured."""

    async def label(
        self,
        cluster: ClusterDocument,
        keywords: list[str],
        context: LabelingContext,
    ) -> ClusterLabel:
        if not keywords:
            return placeholder_label(cluster.cluster_id, keywords, context.language)
        related, _ = _FALLBACK_MESSAGES.get(context.language, _FALLBACK_MESSAGES["en"])
        return ClusterLabel(
            cluster_id=cluster.cluster_id,
            label=", ".join(keywords[:3])[:MAX_LABEL_LENGTH],
            keywords=list(keywords),
            sentiment=0.0,
            reasoning=f"{related} {', '.join(keywords[:5])}.",
            source=SOURCE_KEYWORDS,
        )


class OpenAILabeler:
    def __init__(self, openai_service: OpenAIService | None = None) -> None:
        self._openai = openai_service or OpenAIService()
        self._settings = get_settings()

    def build_prompt(
        self,
        cluster: ClusterDocument,
        keywords: list[str],
        context: LabelingContext,
    ) -> str:
        posts = "\n".join(
            f"{idx}. {collapse_whitespace(text)}" for idx, text in enumerate(cluster.texts, start=1)
        )
        context_section = ""
        if context.operational_context:
            context_section = (
                f"\n\nOperational context:\n{context.operational_context.strip()}\n"
                "Use it to judge the significance of the posts."
            )
        return (
            f"Analyze these {len(cluster.texts)} posts drawn from a cluster of {cluster.size} "
            f"posts.{context_section}\n\n"
            f"Posts:\n{posts}\n\n"
            f"Detected keywords: {', '.join(keywords)}\n\n"
            "Return a JSON object with:\n"
            '- "label": a specific title of 2 to 5 words naming who says what or what is happening; '
            'avoid vague titles such as "Discussion" or "Mixed Opinions".\n'
            '- "description": 2 to 4 sentences on the shared narrative, the voices involved, '
            "and why it matters for monitoring.\n"
            '- "sentiment": a number from -1.0 (strongly negative) to 1.0 (strongly positive).\n\n'
            f"Write the label and description in {context.language_name}."
        )

    async def label(
        self,
        cluster: ClusterDocument,
        keywords: list[str],
        context: LabelingContext,
    ) -> ClusterLabel:
        raw = await self._openai.complete_json(
            system_prompt=SYSTEM_PROMPT,
            prompt=self.build_prompt(cluster, keywords, context),
            max_tokens=self._settings.labeling_max_tokens,
        )
        parsed = parse_label_response(raw)
        return ClusterLabel(
            cluster_id=cluster.cluster_id,
            label=parsed["label"],
            keywords=list(keywords),
            sentiment=parsed["sentiment"],
            reasoning=parsed["reasoning"] or None,
            source=SOURCE_AI,
        )


def default_labeler(openai_service: OpenAIService | None = None) -> ClusterLabeler:
    service = openai_service or OpenAIService()
    if service.is_configured:
        return OpenAILabeler(service)
    _LOGGER.info("OpenAI is not configured; clusters will be labeled from keywords")
    return KeywordLabeler()


async def label_clusters(
    clusters: Sequence[ClusterDocument],
    *,
    labeler: ClusterLabeler,
    context: LabelingContext,
    keywords: dict[int, list[str]] | None = None,
    concurrency: int | None = None,
) -> list[ClusterLabel]:
    """Label every cluster; a failing cluster gets a placeholder and the rest proceed."""

    if keywords is None:
        keywords = extract_cluster_keywords({cluster.cluster_id: cluster.texts for cluster in clusters})
    limit = max(1, concurrency or get_settings().labeling_concurrency)
    semaphore = asyncio.Semaphore(limit)

    async def _label_one(cluster: ClusterDocument) -> ClusterLabel:
        cluster_keywords = keywords.get(cluster.cluster_id) or [f"cluster {cluster.cluster_id}"]
        async with semaphore:
            try:
                result = await labeler.label(cluster, cluster_keywords, context)
            except Exception as exc:
                _LOGGER.warning(
                    "Labeling cluster %d failed, using placeholder: %s",
                    cluster.cluster_id,
                    exc,
                )
                return placeholder_label(cluster.cluster_id, cluster_keywords, context.language)
        if not result.label or not result.label.strip():
            return placeholder_label(cluster.cluster_id, cluster_keywords, context.language)
        if not result.keywords:
            result.keywords = list(cluster_keywords)
        result.keywords = result.keywords[:MAX_KEYWORDS]
        return result

    return list(await asyncio.gather(*(_label_one(cluster) for cluster in clusters)))
