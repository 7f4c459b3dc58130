"""Prompt templates for the built-in agents.

Templates use ``str.format`` placeholders; literal JSON braces are doubled.
"""

from __future__ import annotations

# ---------------------------------------------------------------------------
# Shared
# ---------------------------------------------------------------------------

JSON_SYSTEM_PROMPT = """\
You are a senior software analyst. You study repositories and report
verifiable findings. You MUST return valid JSON matching the schema you are
given. Do not include markdown formatting or commentary, only the JSON object.
Every snippet you quote must be copied exactly from the provided content.
"""

_EVIDENCE_SCHEMA = """\
"evidence": [
        {{"file_path": "relative/path", "start_line": 10, "end_line": 14, "snippet": "exact text"}}
      ]"""

# ---------------------------------------------------------------------------
# Doc agent
# ---------------------------------------------------------------------------

DOC_PROMPT = """\
Analyze the documentation of project "{project_name}".
{focus}
Extract THREE kinds of information, each with evidence:

1. PRODUCT FEATURES: what the product does for users.
2. ARCHITECTURAL CONSTRAINTS: mandatory rules (CRITICAL, MUST, never, always).
3. DEVELOPMENT AND CI/CD WORKFLOWS: explicit commands or multi-step processes.

Return JSON:
{{
  "features": [
    {{"name": "Feature name", "description": "What it does for users",
      "confidence": 0.85,
      """ + _EVIDENCE_SCHEMA + """}}
  ],
  "constraints": [
    {{"rule": "The rule", "reason": "Why it matters", "severity": "critical|high|medium",
      "confidence": 0.9,
      """ + _EVIDENCE_SCHEMA + """}}
  ],
  "workflows": [
    {{"name": "Workflow name", "steps": "1. ...\\n2. ...", "trigger": "When to run it",
      "confidence": 0.8,
      """ + _EVIDENCE_SCHEMA + """}}
  ]
}}

DOCUMENTATION:
{content}
"""

DOC_FOCUS_FEATURES = "Focus on product features and architectural constraints.\n"
DOC_FOCUS_WORKFLOWS = "Focus on build, release and CI/CD workflows.\n"
DOC_FOCUS_CHANGED = "These files just changed; report only what they state.\n"

# ---------------------------------------------------------------------------
# Code agent
# ---------------------------------------------------------------------------

CODE_PROMPT = """\
You are a software architect analyzing {scope} project "{project_name}".
Identify key architectural decisions and recurring implementation patterns.
Cite line numbers from the numbered source below.

Return JSON:
{{
  "decisions": [
    {{"title": "Decision", "component": "Affected component", "what": "What was decided",
      "why": "Why", "tradeoffs": "Costs and alternatives", "confidence": "high|medium|low",
      """ + _EVIDENCE_SCHEMA + """}}
  ],
  "patterns": [
    {{"name": "Pattern", "context": "Where it applies", "solution": "How it is implemented",
      "consequences": "Effects", "confidence": "high|medium|low",
      """ + _EVIDENCE_SCHEMA + """}}
  ]
}}

{content}
"""

REACT_CODE_SYSTEM_PROMPT = """\
You are a software architect exploring the repository of project "{project_name}"
with tools. Use list_dir, read_file, grep_search and exec_command to find the key
architectural decisions and patterns. Paths are relative to the repository root.
When you have enough evidence, stop calling tools and reply with the final JSON:
{{
  "decisions": [{{"title": "...", "component": "...", "what": "...", "why": "...",
                  "tradeoffs": "...", "confidence": "high|medium|low",
                  "evidence": [{{"file_path": "...", "start_line": 1, "end_line": 2, "snippet": "..."}}]}}],
  "patterns": [{{"name": "...", "context": "...", "solution": "...", "consequences": "...",
                 "confidence": "high|medium|low",
                 "evidence": [{{"file_path": "...", "start_line": 1, "end_line": 2, "snippet": "..."}}]}}]
}}
"""

REACT_CODE_START = "Start exploring the repository. {hint}"

# ---------------------------------------------------------------------------
# Git agent
# ---------------------------------------------------------------------------

GIT_PROMPT = """\
You are a software historian analyzing git history for project "{project_name}".
This is chunk {chunk} of {total_chunks}.

PROJECT META:
{meta}

Identify at most {max_findings} significant milestones (major features, rewrites,
migrations, releases). Quote the commit line as the snippet and use ".git" as the
file_path.

Return JSON:
{{
  "milestones": [
    {{"title": "Milestone", "scope": "Affected area", "description": "What happened and why",
      "confidence": 0.8,
      "evidence": [{{"file_path": ".git", "snippet": "abc1234 2024-01-10 feat: ..."}}]}}
  ]
}}

COMMITS:
{commits}
"""

# ---------------------------------------------------------------------------
# Deps agent
# ---------------------------------------------------------------------------

DEPS_PROMPT = """\
You are a technology analyst. Analyze the dependency manifests of project "{project_name}".
Identify the key technology choices (frameworks, databases, protocols, tooling).

Return JSON:
{{
  "tech_decisions": [
    {{"title": "Uses X for Y", "category": "framework|database|testing|tooling|infra|library",
      "what": "What the dependency provides", "why": "Likely reason for choosing it",
      "confidence": 0.8,
      """ + _EVIDENCE_SCHEMA + """}}
  ]
}}

MANIFESTS:
{content}
"""

# ---------------------------------------------------------------------------
# Planning agents
# ---------------------------------------------------------------------------

CLARIFYING_PROMPT = """\
A developer wants to achieve the following goal in project "{project_name}":

GOAL: {goal}

CONVERSATION SO FAR:
{history}

PROJECT CONTEXT:
{context}

Ask the clarifying questions that most reduce ambiguity (at most 5). If the goal
is already specific enough to plan, say so.

Return JSON:
{{
  "questions": ["..."],
  "goal_summary": "One-line summary",
  "enriched_goal": "The goal restated with every clarified detail",
  "is_ready_to_plan": false
}}
"""

PLANNING_PROMPT = """\
Create an implementation plan for this goal in project "{project_name}":

GOAL: {goal}

PROJECT CONTEXT:
{context}

Return JSON:
{{
  "tasks": [
    {{"title": "Task", "description": "What to do", "acceptance_criteria": ["..."],
      "priority": "low|medium|high|urgent", "dependencies": ["title of earlier task"]}}
  ],
  "rationale": "Why the plan is ordered this way"
}}
"""

DUPLICATE_PROMPT = """\
Decide whether a requested feature duplicates something the project already has.

REQUEST: {query}

EXISTING FEATURES:
{features}

Return JSON:
{{
  "is_duplicate": false,
  "confidence": 0.0,
  "matching_feature": "",
  "overlap_type": "exact|partial|none",
  "explanation": "...",
  "recommendation": "..."
}}
"""

NO_CONTEXT = "No specific knowledge graph context provided."
