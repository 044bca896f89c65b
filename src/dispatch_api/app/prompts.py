"""Prompt composition: turn a classified graph into model instructions.

Beginner terms:
- PromptSpec: instruction text + generation parameters for one model call.
- Node manifest: the literal list of node ids/names pasted into the prompt.
  The model has no other way to refer back to graph nodes, so every prompt
  carries one and asks the model to echo the ids verbatim.
- Output contract: the closing instructions that pin the answer to one JSON
  object with exactly `summary` and `perNodeResults`.

Each archetype has a body builder that returns sections plus the nodes the
model must report on and the per-node fields it must fill. `compose` then
appends the shared parts (manifest, connections, output contract) so no
archetype can forget them.
"""

from __future__ import annotations

import json
from collections.abc import Callable, Sequence
from dataclasses import dataclass

from .classifier import Archetype, Classification, Trait, content_url
from .content import truncate_text
from .llm import GenerationParams
from .models import Edge, Node, WorkflowGraph


@dataclass(frozen=True)
class ManifestEntry:
    node_id: str
    node_name: str


@dataclass(frozen=True)
class PromptSpec:
    archetype: Archetype
    text: str
    generation: GenerationParams
    manifest: tuple[ManifestEntry, ...]
    # URL of the analysed content, when the workflow has one.
    content_url: str | None = None


@dataclass(frozen=True)
class ComposeContext:
    classification: Classification
    graph: WorkflowGraph
    workflow_name: str
    article_text: str = ""
    content_max_chars: int = 10_000


@dataclass
class PromptBody:
    sections: list[str]
    # Nodes that must each get one perNodeResults entry.
    result_nodes: list[Node]
    # perNodeResults field name -> description (nodeId/nodeName are implied).
    result_fields: dict[str, str]
    subject: str = "node"
    content_url: str | None = None


# Analytical archetypes run cold for consistency; simulations run warm for variety.
GENERATION_BY_ARCHETYPE: dict[Archetype, GenerationParams] = {
    Archetype.CONTENT_IMPACT: GenerationParams(temperature=0.25),
    Archetype.MEDIA_BIAS: GenerationParams(temperature=0.25),
    Archetype.DEVIATION: GenerationParams(temperature=0.3),
    Archetype.TBI: GenerationParams(temperature=0.3),
    Archetype.RESEARCH: GenerationParams(temperature=0.3),
    Archetype.SIMULATION: GenerationParams(temperature=0.7, max_output_tokens=4000),
}

REACTION_FIELDS = {
    "engagement": "engagement score from 1 to 10",
    "primaryReaction": "short description of the primary emotional/cognitive reaction",
    "wouldShare": '"Yes" or "No"',
    "keyInsight": "one concise insight into this node's response",
}

# Persona panel layers for content impact, matched on label keywords.
PERSONA_LAYERS: tuple[tuple[str, tuple[str, ...], str], ...] = (
    ("Emotional Processing", ("Emotion", "Amygdala", "Insula"), "Emotional valence and arousal"),
    ("Attention Network", ("Attention", "ACC", "Parietal"), "Attentional capture and focus"),
    ("Reward Circuit", ("Reward", "Nucleus", "Dopamine"), "Dopaminergic response and motivation"),
    ("Memory Systems", ("Memory", "Hippocampus"), "Memory encoding strength"),
    ("Social Cognition", ("Social", "TPJ", "STS"), "Social relevance and virality"),
    ("Decision / Executive", ("Decision", "DLPFC", "vmPFC"), "Call-to-action effectiveness"),
    ("Language Processing", ("Language", "Broca", "Wernicke"), "Message clarity and persuasion"),
    ("Motor / Action", ("Motor", "SMA", "Mirror"), "Physical engagement and mimicry"),
)


def compose(
    classification: Classification,
    graph: WorkflowGraph,
    *,
    workflow_name: str = "Untitled Workflow",
    article_text: str = "",
    content_max_chars: int = 10_000,
) -> PromptSpec:
    """Build the full instruction text for the classified archetype."""
    context = ComposeContext(
        classification=classification,
        graph=graph,
        workflow_name=workflow_name,
        article_text=article_text,
        content_max_chars=content_max_chars,
    )
    body = BODY_BUILDERS[classification.archetype](context)
    manifest = tuple(
        ManifestEntry(node_id=node.id, node_name=node.display_name()) for node in graph.nodes
    )
    sections = [
        *body.sections,
        _manifest_section(manifest),
        _per_node_section(body, total_nodes=len(graph.nodes)),
    ]
    connections = _connections_section(graph.edges, graph.nodes)
    if connections:
        sections.append(connections)
    sections.append(_output_contract(body))
    return PromptSpec(
        archetype=classification.archetype,
        text="\n\n".join(section.strip() for section in sections if section.strip()) + "\n",
        generation=GENERATION_BY_ARCHETYPE[classification.archetype],
        manifest=manifest,
        content_url=body.content_url,
    )


def _content_impact_body(context: ComposeContext) -> PromptBody:
    classification = context.classification
    personas = classification.nodes_with(Trait.PERSONA)
    url_nodes = classification.nodes_with(Trait.CONTENT_URL)
    article_nodes = classification.nodes_with(Trait.ARTICLE)
    source = (url_nodes or article_nodes)[0]
    url = content_url(source) or "Content"
    title = source.text("videoTitle") or (article_nodes[0].label if article_nodes else "")
    title = title or "Submitted Content"

    if classification.variant == "article":
        intro = (
            f"You are an advanced content impact analyst simulating {len(personas)} distinct "
            "reader personas reacting to a news article."
        )
        content_block = _article_block(context, title=title, url=url)
    else:
        intro = (
            f"You are an advanced neuromarketing AI simulating {len(personas)} distinct brain "
            "processing units analyzing video content. Watch and analyze the ACTUAL video at "
            "the URL below; do not guess from the title."
        )
        content_block = f"## Content Being Analyzed\n**URL**: {url}\n**Title**: {title}"

    layers = [
        f"You are simulating {len(personas)} persona processors in parallel.",
    ]
    for layer_name, keywords, default_role in PERSONA_LAYERS:
        members = [n for n in personas if any(keyword in n.label for keyword in keywords)]
        if not members:
            continue
        lines = "\n".join(
            f"- {n.display_name()}: {n.text('description', default_role)}" for n in members
        )
        layers.append(f"### {layer_name} ({len(members)} nodes)\n{lines}")
    references = classification.nodes_with(Trait.REFERENCE)
    if references:
        lines = "\n".join(
            f"- {n.display_name()}: {n.text('description', 'Normative comparison data')}"
            for n in references
        )
        layers.append(f"## Reference Baselines\n{lines}")

    task = """## Your Task: Content Impact Report
Provide, referencing concrete moments of the content:

### 1. Executive Summary
- Overall Engagement Score (0-100)
- Key strengths and key weaknesses
- Viral potential rating with reasoning

### 2. Emotional Response Profile
- Primary emotions triggered, intensity (1-10), emotional arc, valence

### 3. Attention Analysis
- First 3-second hook effectiveness
- Attention-sustaining elements and drop-off risk moments
- Pattern interrupt frequency

### 4. Reward & Motivation
- Reward trigger points, anticipation elements, payoff, re-watch motivation

### 5. Memory & Recall
- Encoding strength, memorable moments, message association, 24-hour recall

### 6. Social & Sharing
- Social proof, share motivation type, comment/debate triggers

### 7. Action & Conversion
- Call-to-action clarity, intent drivers, next-step friction, urgency

### 8. Optimization Recommendations
- Top 3 improvements, timing/edit suggestions, A/B testing ideas

Be specific and quantitative where possible."""

    return PromptBody(
        sections=[intro, content_block, "## Persona Panel\n" + "\n\n".join(layers), task],
        result_nodes=personas,
        result_fields=REACTION_FIELDS,
        subject="persona",
        content_url=url if url != "Content" else None,
    )


def _media_bias_body(context: ComposeContext) -> PromptBody:
    classification = context.classification
    article = classification.nodes_with(Trait.ARTICLE)[0]
    url = content_url(article)
    title = article.label or "Submitted Article"
    bias_ids = {n.id for n in classification.nodes_with(Trait.BIAS_ANALYSIS)}
    modules = [
        n
        for n in context.graph.nodes
        if n.type in {"preprocessingNode", "analysisNode", "brainNode"}
        or n.id in bias_ids
        or any(word in n.label.lower() for word in ("detector", "checker", "scanner", "analyzer"))
    ]
    module_lines = "\n".join(f"- {n.display_name()}" for n in modules)
    module_lines = module_lines or "- General Content Analyzer"

    task = """## Your Task
Run the article through each configured module and provide:

### 1. Executive Summary
- Overall bias rating (Left-Strong, Left-Lean, Center, Right-Lean, Right-Strong)
- Credibility score (0-100)
- Key findings in 2-3 sentences

### 2. Bias Detection
- Political leaning indicators, with quotes
- Word choice: loaded language, euphemisms, framing
- Source diversity and perspective balance

### 3. Manipulation Tactics
- Emotional manipulation techniques and logical fallacies
- Misleading or cherry-picked statistics
- Fear/outrage triggers

### 4. Fact Check Summary
- Verifiable claims and an accuracy assessment for each major claim
- Missing context or omissions
- Recommended fact-check sources

### 5. Audience Impact
- Target demographic, likely emotional response, share potential, opinion shift risk

Quote the article directly when identifying bias or manipulation."""

    return PromptBody(
        sections=[
            "You are a media bias and content impact analyst powered by a multi-node "
            "analysis pipeline.",
            f"## Analysis Pipeline Modules\n{module_lines}",
            _article_block(context, title=title, url=url),
            task,
        ],
        result_nodes=list(context.graph.nodes),
        result_fields=REACTION_FIELDS,
        content_url=url or None,
    )


def _deviation_body(context: ComposeContext) -> PromptBody:
    classification = context.classification
    sections = [
        "You are a clinical neuroscience assistant specializing in individual patient "
        "analysis against normative databases.",
        "## Workflow Type: Patient vs. Control Group Comparison",
    ]
    references = _reference_lines(classification)
    if references:
        sections.append(
            f"## Reference Datasets (Healthy Controls)\n{references}\n\n"
            "These datasets are the statistical baseline for the patient's data."
        )
    regions = _region_lines(classification)
    if regions:
        sections.append(
            f"## Target Brain Regions\n{regions}\n\nFocus the deviation analysis on these regions."
        )
    comparisons = classification.nodes_with(Trait.COMPARISON)
    if comparisons:
        lines = "\n".join(
            f"- {n.display_name('Comparison')} ({n.text('comparisonType', 'deviation')} analysis)"
            for n in comparisons
        )
        sections.append(f"## Comparison Methods\n{lines}")
    if classification.injury_focus:
        sections.append(_TBI_FOCUS)
    sections.append(
        """## Task: Patient Deviation Report
1. **Executive Summary**: key findings in brief
2. **Deviation Analysis**: regions/tracts deviating from healthy controls, with z-scores and
   percentile rankings ("your [region] connectivity is in the Xth percentile")
3. **Clinical Implications**: what the deviations may mean functionally
4. **Comparison to Literature**: how the pattern compares to published findings
5. **Recommendations**: follow-up assessments or interventions

Write so the report is understandable by a patient, defensible in court (cite the
statistical methods), and actionable for clinicians."""
    )
    return PromptBody(
        sections=sections,
        result_nodes=list(context.graph.nodes),
        result_fields={
            "finding": "what this node contributes to the deviation report",
            "percentile": "percentile versus controls, when the node measures a region",
            "zScore": "z-score versus controls, when applicable",
        },
    )


def _tbi_body(context: ComposeContext) -> PromptBody:
    classification = context.classification
    sections = [
        "You are a forensic neuroscience expert specializing in Traumatic Brain Injury "
        "documentation and analysis.",
        "## Workflow Type: TBI Evidence Generation",
    ]
    regions = _region_lines(classification)
    if regions:
        sections.append(f"## Target Brain Regions\n{regions}")
    references = _reference_lines(classification)
    if references:
        sections.append(f"## Normative Reference\n{references}")
    sections.append(
        """## Task: TBI Evidence Report
1. **Injury Pattern Analysis**: typical TBI patterns in the specified regions
2. **White Matter Assessment**: corpus callosum, arcuate fasciculus, corticospinal tract
3. **Deviation Quantification**: statistical evidence of abnormality vs. healthy population
4. **Functional Correlates**: link structural findings to symptoms
5. **Causation Opinion**: relation of findings to the reported mechanism of injury
6. **Prognosis**: expected recovery trajectory by deviation severity

The report must be suitable for personal injury litigation, insurance claims, and
disability documentation. Cite literature and use precise statistical language."""
    )
    return PromptBody(
        sections=sections,
        result_nodes=list(context.graph.nodes),
        result_fields={
            "finding": "what this node shows about the injury",
            "severity": "none, mild, moderate, or severe",
        },
    )


def _simulation_body(context: ComposeContext) -> PromptBody:
    classification = context.classification
    agents = classification.nodes_with(Trait.AGENT)
    data_nodes = classification.nodes_with(Trait.DATA_SOURCE)
    analysis_nodes = classification.nodes_with(Trait.ANALYSIS)
    output_nodes = classification.nodes_with(Trait.OUTPUT)
    data_node = data_nodes[0] if data_nodes else None
    data_label = data_node.display_name() if data_node else "Input Data"
    data_details = "Sample dataset"
    if data_node:
        data_details = data_node.text("sampleDataDescription") or data_node.text(
            "description", data_details
        )

    context_lines = [
        f"**Workflow Name**: {context.workflow_name}",
        f"**Data Source**: {data_label}",
        f"**Data Details**: {data_details}",
    ]

    if classification.variant == "test":
        context_lines.append(f"**Number of Participants**: {len(agents)}")
        if analysis_nodes:
            context_lines.append(f"**Analysis**: {analysis_nodes[0].display_name()}")
        if output_nodes:
            context_lines.append(f"**Output**: {output_nodes[0].display_name()}")
        task = """## Your Task: Run the Simulation
### Step 1: Generate Sample Test Data
Generate a realistic set of test questions from the data source description: multiple
choice with four options (A-D), at least 20 questions across Math, Reading and Writing,
varying difficulty.

### Step 2: Simulate Each Participant
Give every participant realistic time per question, individual strengths, natural score
variation, and personality traits that affect test-taking style.

### Step 3: Aggregate Analysis
Class average, score distribution (top, average, struggling), commonly missed question
types, and recommendations.

Make the simulation feel realistic with varied, believable performances."""
        return PromptBody(
            sections=[
                f"You are simulating {len(agents)} participants taking a test/exam.",
                "## Simulation Context\n" + "\n".join(context_lines),
                task,
            ],
            result_nodes=agents,
            result_fields={
                "score": "overall percentage score (0-100)",
                "mathScore": "math section score",
                "readingScore": "reading section score",
                "writingScore": "writing section score",
                "timeSpent": "total time in minutes",
                "questionsAnswered": "number of questions completed",
                "strengths": "array of strong areas",
                "weaknesses": "array of areas needing improvement",
                "performanceNotes": "brief personality-driven performance narrative",
            },
            subject="participant",
        )

    context_lines.append(f"**Number of Agents**: {len(agents)}")
    return PromptBody(
        sections=[
            f"You are simulating {len(agents)} agents processing data in parallel.",
            "## Simulation Context\n" + "\n".join(context_lines),
            """## Your Task
1. Generate appropriate sample data from the data source description
2. Simulate each agent processing the data with realistic variation
3. Report each agent's individual outcome and the aggregate picture

Make results realistic and varied across agents.""",
        ],
        result_nodes=agents,
        result_fields={
            "status": '"completed" or "failed"',
            "processingTime": "time in ms",
            "result": "object with agent-specific results",
            "insights": "key findings",
        },
        subject="agent",
    )


def _research_body(context: ComposeContext) -> PromptBody:
    classification = context.classification
    sections = ["You are a neuroscience research assistant specializing in brain imaging analysis."]
    regions = _region_lines(classification)
    if regions:
        sections.append(
            "## Target Brain Regions\n"
            f"{regions}\n\n"
            "Provide region-specific insights, known functions, connectivity patterns, and "
            "relevant research findings for these areas."
        )
    data_nodes = classification.nodes_with(Trait.DATA_SOURCE)
    if data_nodes:
        lines = "\n".join(
            f"- {n.display_name()}: {n.text('description', 'No description')}" for n in data_nodes
        )
        sections.append(
            f"## Data Sources\n{lines}\n\n"
            "Consider data quality, preprocessing requirements, and compatibility with the "
            "target regions."
        )
    analysis_nodes = classification.nodes_with(Trait.ANALYSIS)
    if analysis_nodes:
        lines = "\n".join(
            f"- {n.display_name()}: {n.text('description', 'Neural analysis')}"
            for n in analysis_nodes
        )
        sections.append(f"## Analysis Pipeline\n{lines}")
    output_nodes = classification.nodes_with(Trait.OUTPUT)
    if output_nodes:
        lines = "\n".join(f"- {n.display_name()}" for n in output_nodes)
        sections.append(f"## Requested Outputs\n{lines}")
    sections.append(
        """## Task
Based on the workflow configuration, provide:
1. **Region Overview**: anatomical and functional characteristics of the target regions
2. **Analysis Recommendations**: methodological approaches for these regions
3. **Expected Findings**: patterns the literature suggests
4. **Quality Considerations**: artifacts or issues to watch for
5. **Related Research**: key studies or datasets

Be specific and cite relevant neuroscience concepts."""
    )
    return PromptBody(
        sections=sections,
        result_nodes=list(context.graph.nodes),
        result_fields={
            "role": "what this node does in the workflow",
            "insight": "the most useful finding or recommendation for this node",
        },
    )


BODY_BUILDERS: dict[Archetype, Callable[[ComposeContext], PromptBody]] = {
    Archetype.CONTENT_IMPACT: _content_impact_body,
    Archetype.MEDIA_BIAS: _media_bias_body,
    Archetype.DEVIATION: _deviation_body,
    Archetype.TBI: _tbi_body,
    Archetype.SIMULATION: _simulation_body,
    Archetype.RESEARCH: _research_body,
}

_TBI_FOCUS = """## TBI Analysis Mode
This analysis is configured for Traumatic Brain Injury assessment. Focus on:
- White matter tract integrity (DTI/tractography)
- Commonly affected regions: corpus callosum, frontal-temporal connections
- Axonal shearing patterns
- Functional implications of detected deviations"""


def _article_block(context: ComposeContext, *, title: str, url: str) -> str:
    if context.article_text:
        body = truncate_text(context.article_text, context.content_max_chars)
    else:
        body = "[Article text not available - analyze based on the URL and title]"
    return f"## Article To Analyze\n**Title**: {title}\n**URL**: {url}\n\n## Article Text\n{body}"


def _region_lines(classification: Classification) -> str:
    lines = []
    for node in classification.nodes_with(Trait.REGION):
        name = node.text("regionName") or node.label or "Unknown Region"
        abbreviation = node.text("regionAbbreviation")
        lines.append(f"- {name} ({abbreviation})" if abbreviation else f"- {name}")
    return "\n".join(lines)


def _reference_lines(classification: Classification) -> str:
    lines = []
    for node in classification.nodes_with(Trait.REFERENCE):
        details = node.text("subjects") or node.text("description")
        label = node.display_name("Reference Dataset")
        lines.append(f"- {label}: {details}" if details else f"- {label}")
    return "\n".join(lines)


def _manifest_section(manifest: Sequence[ManifestEntry]) -> str:
    lines = "\n".join(
        f"  - nodeId: {_quoted(entry.node_id)}, nodeName: {_quoted(entry.node_name)}"
        for entry in manifest
    )
    return (
        "## Node Manifest (use these EXACT nodeIds)\n"
        "These are the actual node ids of the workflow. Copy nodeId values verbatim; "
        "never invent, shorten, or renumber them.\n"
        f"{lines}"
    )


def _per_node_section(body: PromptBody, *, total_nodes: int) -> str:
    fields = "\n".join(
        f'- "{name}": {description}' for name, description in body.result_fields.items()
    )
    if len(body.result_nodes) == total_nodes:
        scope = "Return exactly one perNodeResults object for EACH node in the manifest."
    else:
        ids = ", ".join(_quoted(node.id) for node in body.result_nodes)
        scope = (
            f"Return exactly one perNodeResults object for EACH {body.subject} node "
            f"({len(body.result_nodes)} in total): {ids}."
        )
    return (
        "## Per-Node Results\n"
        f"{scope}\n"
        "Each object MUST contain:\n"
        '- "nodeId": the exact nodeId from the manifest\n'
        '- "nodeName": the nodeName from the manifest\n'
        f"{fields}"
    )


def _connections_section(edges: Sequence[Edge], nodes: Sequence[Node]) -> str:
    if not edges:
        return ""
    names = {node.id: node.display_name() for node in nodes}
    lines = "\n".join(
        f"- {names.get(edge.source, edge.source)} → {names.get(edge.target, edge.target)}"
        for edge in edges
    )
    return f"## Workflow Connections\n{lines}"


def _output_contract(body: PromptBody) -> str:
    example_fields = ", ".join(f'"{name}": ...' for name in body.result_fields)
    return (
        "## Output Format\n"
        "Your ENTIRE response MUST be a single JSON object with exactly two top-level keys:\n"
        '- "summary": one markdown string containing every report section above\n'
        '- "perNodeResults": the JSON array described under Per-Node Results\n'
        "Example shape:\n"
        '{"summary": "## Executive Summary ...", "perNodeResults": '
        f'[{{"nodeId": "...", "nodeName": "...", {example_fields}}}]}}\n'
        "Do not add any other top-level keys and do not write text outside the JSON object."
    )


def _quoted(value: str) -> str:
    return json.dumps(value, ensure_ascii=False)
