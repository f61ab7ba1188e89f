"""URL-pattern heuristics for discovered item node type, role and risk."""

from __future__ import annotations

import re
from dataclasses import dataclass

from src.parsing.urls import DOCUMENT_EXTENSIONS, file_extension, parse_url
from src.regulatory.types import FreshnessRisk, NodeRole, NodeType


@dataclass(frozen=True)
class UrlClassification:
    node_type: NodeType
    node_role: NodeRole | None
    freshness_risk: FreshnessRisk


_OFFICIAL_GAZETTE_HOSTS = ("narodne-novine.nn.hr", "nn.hr")
_NEWS_RE = re.compile(r"/(novosti|vijesti|news|priopcenja|obavijesti)(/|$)")
_GUIDANCE_RE = re.compile(r"/(upute|vodic|vodici|misljenja|guide|faq)(/|$|-)")
_FORM_RE = re.compile(r"/(obrasci|forms|tiskanice)(/|$)")


def classify_url(url: str) -> UrlClassification:
    """Classify a URL by its host, path and extension.

    Order matters: binary documents are always ASSETs, official gazette
    articles are CRITICAL regulation, news sections are HIGH-risk hubs.
    """
    parsed = parse_url(url)
    path = parsed.path.lower()

    if file_extension(url) in DOCUMENT_EXTENSIONS:
        return UrlClassification(NodeType.ASSET, None, FreshnessRisk.MEDIUM)

    if parsed.host.endswith(_OFFICIAL_GAZETTE_HOSTS) and "/sluzbeni/" in path:
        return UrlClassification(NodeType.LEAF, NodeRole.REGULATION, FreshnessRisk.CRITICAL)

    if _NEWS_RE.search(path):
        return UrlClassification(NodeType.HUB, NodeRole.NEWS_FEED, FreshnessRisk.HIGH)

    if _GUIDANCE_RE.search(path):
        return UrlClassification(NodeType.LEAF, NodeRole.GUIDANCE, FreshnessRisk.HIGH)

    if _FORM_RE.search(path):
        return UrlClassification(NodeType.LEAF, NodeRole.FORM, FreshnessRisk.MEDIUM)

    return UrlClassification(NodeType.LEAF, None, FreshnessRisk.MEDIUM)
