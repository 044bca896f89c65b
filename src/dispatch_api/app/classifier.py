"""Graph classification: pick one task archetype for a submitted workflow.

Beginner terms:
- Archetype: the task category that decides which prompt gets composed.
- Trait: a capability tag on a node ("persona", "article", ...). A node can
  carry several traits.
- Profile: a node plus its resolved traits.

Traits come from the node itself when the editor sets `data.traits`
explicitly. Older graphs do not, so traits are derived from the node `type`
tag and from label keywords. Classification then only counts traits, in a
fixed precedence order, so the result is explainable and testable.

Everything in this module is pure: no I/O, no randomness.
"""

from __future__ import annotations

import re
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from enum import Enum

from .models import Node


class Archetype(str, Enum):
    CONTENT_IMPACT = "content_impact"
    MEDIA_BIAS = "media_bias"
    DEVIATION = "deviation"
    TBI = "tbi"
    SIMULATION = "simulation"
    RESEARCH = "research"


class Trait(str, Enum):
    PERSONA = "persona"
    CONTENT_URL = "content_url"
    ARTICLE = "article"
    BIAS_ANALYSIS = "bias_analysis"
    REFERENCE = "reference"
    COMPARISON = "comparison"
    INJURY = "injury"
    PATIENT = "patient"
    AGENT = "agent"
    DATA_SOURCE = "data_source"
    QUESTION_BANK = "question_bank"
    REGION = "region"
    ANALYSIS = "analysis"
    OUTPUT = "output"


CONTENT_IMPACT_MIN_PERSONAS = 10
MEDIA_BIAS_MIN_ANALYSIS = 2
TEST_SIMULATION_MIN_AGENTS = 2
AGENT_SIMULATION_MIN_AGENTS = 3

# Node `type` tag -> traits implied by the tag alone.
TYPE_TRAITS: dict[str, frozenset[Trait]] = {
    "brainNode": frozenset({Trait.PERSONA}),
    "contentUrlInputNode": frozenset({Trait.CONTENT_URL}),
    "newsArticleNode": frozenset({Trait.ARTICLE}),
    "preprocessingNode": frozenset({Trait.BIAS_ANALYSIS}),
    "analysisNode": frozenset({Trait.BIAS_ANALYSIS, Trait.ANALYSIS}),
    "analysis": frozenset({Trait.ANALYSIS}),
    "brain": frozenset({Trait.ANALYSIS}),
    "referenceDatasetNode": frozenset({Trait.REFERENCE}),
    "reference": frozenset({Trait.REFERENCE}),
    "comparisonAgentNode": frozenset({Trait.COMPARISON}),
    "comparison": frozenset({Trait.COMPARISON}),
    "brainOrchestratorNode": frozenset({Trait.AGENT}),
    "dataNode": frozenset({Trait.DATA_SOURCE}),
    "data": frozenset({Trait.DATA_SOURCE}),
    "brainRegion": frozenset({Trait.REGION}),
    "output": frozenset({Trait.OUTPUT}),
    "outputNode": frozenset({Trait.OUTPUT}),
}

# Case-insensitive label keywords -> trait.
LABEL_KEYWORDS: dict[Trait, tuple[str, ...]] = {
    Trait.BIAS_ANALYSIS: ("bias", "fact", "manipulation"),
    Trait.REFERENCE: ("hcp", "reference"),
    Trait.COMPARISON: ("deviation", "comparison"),
    Trait.INJURY: ("tbi", "traumatic", "concussion", "brain injury"),
    Trait.PATIENT: ("patient", "upload"),
    Trait.AGENT: ("student", "agent", "participant"),
    Trait.OUTPUT: ("output",),
}

QUESTION_BANK_KEYWORDS = ("question", "exam", "test")
TEST_NAME_RE = re.compile(r"test|exam|simulation|\bsat\b", re.IGNORECASE)
VIDEO_HOSTS = ("youtube.com", "youtu.be", "tiktok.com")

_TRAIT_VALUES = {trait.value: trait for trait in Trait}


@dataclass(frozen=True)
class NodeProfile:
    node: Node
    traits: frozenset[Trait]

    def has(self, trait: Trait) -> bool:
        return trait in self.traits


@dataclass(frozen=True)
class Classification:
    """Selected archetype plus the node groups the composer needs."""

    archetype: Archetype
    profiles: tuple[NodeProfile, ...]
    # "video"/"article" for content_impact, "test"/"agents" for simulation.
    variant: str | None = None
    # Deviation reports add a TBI section when injury nodes are present.
    injury_focus: bool = False
    reasons: tuple[str, ...] = field(default_factory=tuple)

    def nodes_with(self, trait: Trait) -> list[Node]:
        return [profile.node for profile in self.profiles if profile.has(trait)]

    def count(self, trait: Trait) -> int:
        return sum(1 for profile in self.profiles if profile.has(trait))


def profile_node(node: Node) -> NodeProfile:
    """Resolve traits for one node; explicit `data.traits` wins."""
    explicit = _explicit_traits(node)
    if explicit is not None:
        return NodeProfile(node=node, traits=explicit)

    traits: set[Trait] = set(TYPE_TRAITS.get(node.type, frozenset()))
    if node.data.get("subType") == "url":
        traits.add(Trait.CONTENT_URL)
    if node.data.get("regionId"):
        traits.add(Trait.REGION)

    lowered = node.label.lower()
    for trait, keywords in LABEL_KEYWORDS.items():
        if any(keyword in lowered for keyword in keywords):
            traits.add(trait)
    if Trait.DATA_SOURCE in traits and any(word in lowered for word in QUESTION_BANK_KEYWORDS):
        traits.add(Trait.QUESTION_BANK)
    return NodeProfile(node=node, traits=frozenset(traits))


def classify(nodes: Sequence[Node], workflow_name: str = "") -> Classification:
    """Select one archetype; the first matching rule wins."""
    profiles = tuple(profile_node(node) for node in nodes)

    def count(trait: Trait) -> int:
        return sum(1 for profile in profiles if profile.has(trait))

    personas = count(Trait.PERSONA)
    content_urls = [p.node for p in profiles if p.has(Trait.CONTENT_URL)]
    articles = count(Trait.ARTICLE)
    has_video = any(is_video_url(content_url(node)) for node in content_urls)

    # 1) Content impact: large persona panel reacting to a piece of content.
    if personas >= CONTENT_IMPACT_MIN_PERSONAS and (content_urls or articles):
        return Classification(
            archetype=Archetype.CONTENT_IMPACT,
            profiles=profiles,
            variant="article" if articles and not content_urls else "video",
            reasons=(f"personas={personas}", f"content_urls={len(content_urls)}"),
        )

    # 2) Media bias: article input plus bias/fact/manipulation modules.
    bias_modules = count(Trait.BIAS_ANALYSIS)
    if articles and not has_video and bias_modules >= MEDIA_BIAS_MIN_ANALYSIS:
        return Classification(
            archetype=Archetype.MEDIA_BIAS,
            profiles=profiles,
            variant="article",
            reasons=(f"articles={articles}", f"bias_modules={bias_modules}"),
        )

    # 3) Patient vs. reference, or explicit comparison.
    injury = count(Trait.INJURY) > 0
    patient_vs_reference = count(Trait.PATIENT) > 0 and count(Trait.REFERENCE) > 0
    if patient_vs_reference or count(Trait.COMPARISON) > 0:
        return Classification(
            archetype=Archetype.DEVIATION,
            profiles=profiles,
            injury_focus=injury,
            reasons=(f"patient_vs_reference={patient_vs_reference}",),
        )

    # 4) Injury documentation.
    if injury:
        return Classification(archetype=Archetype.TBI, profiles=profiles, reasons=("injury",))

    # 5) Simulations: test takers or parallel agents.
    variant = _simulation_variant(profiles, workflow_name)
    if variant is not None:
        return Classification(
            archetype=Archetype.SIMULATION,
            profiles=profiles,
            variant=variant,
            reasons=(f"agents={count(Trait.AGENT)}",),
        )

    return Classification(archetype=Archetype.RESEARCH, profiles=profiles, reasons=("default",))


def content_url(node: Node) -> str:
    return node.text("url") or node.text("value")


def is_video_url(url: str) -> bool:
    lowered = url.lower()
    return any(host in lowered for host in VIDEO_HOSTS)


def _simulation_variant(profiles: Iterable[NodeProfile], workflow_name: str) -> str | None:
    profiles = tuple(profiles)
    agents = sum(1 for p in profiles if p.has(Trait.AGENT))
    data_sources = sum(1 for p in profiles if p.has(Trait.DATA_SOURCE))
    test_cues = bool(TEST_NAME_RE.search(workflow_name)) or any(
        p.has(Trait.QUESTION_BANK) for p in profiles
    )
    if test_cues and agents >= TEST_SIMULATION_MIN_AGENTS:
        return "test"
    if agents >= AGENT_SIMULATION_MIN_AGENTS and data_sources >= 1:
        return "agents"
    return None


def _explicit_traits(node: Node) -> frozenset[Trait] | None:
    raw = node.data.get("traits")
    if not isinstance(raw, list):
        return None
    traits = {
        _TRAIT_VALUES[item] for item in raw if isinstance(item, str) and item in _TRAIT_VALUES
    }
    return frozenset(traits) if traits else None
