"""Prompt templates for the architect, the specialist agents and the summary.

Agent answers are kept deliberately short: each one is folded into the
rolling context that later phases read.
"""

from __future__ import annotations


# =============================================================================
# Architect Prompts
# =============================================================================

ARCHITECT_PROMPT = """Respond with JSON only: {{"plan":[...],"inputs":[...]}}.
"plan": {min_agents}-{max_agents} agents, each {{ "agentName","systemInstruction","initialTask" }}.
Agents may add "phase" (integer, agents sharing a phase run in parallel), "phaseLabel", and "dependsOn" / "next" (lists of other agentNames).
"inputs": up to {max_inputs} items, each {{ "title","type","sample" }} where "type" is {input_types}. Keep sentences short."""


def _join_choices(choices: tuple[str, ...]) -> str:
    """'"a"', '"a" or "b"', '"a", "b", or "c"'."""
    quoted = [f'"{choice}"' for choice in choices]
    if len(quoted) <= 2:
        return " or ".join(quoted)
    return ", ".join(quoted[:-1]) + f", or {quoted[-1]}"


def format_architect_prompt(
    min_agents: int,
    max_agents: int,
    max_inputs: int,
    input_types: tuple[str, ...],
) -> str:
    """Format the architect system prompt."""
    return ARCHITECT_PROMPT.format(
        min_agents=min_agents,
        max_agents=max_agents,
        max_inputs=max_inputs,
        input_types=_join_choices(input_types),
    )


# =============================================================================
# Agent Prompts
# =============================================================================

AGENT_SYSTEM_SUFFIX = "Answer in <=50 words using short bullet sentences."

AGENT_PROMPT = """Problem:
{problem}

Input Data:
{data}

Task:
{task}

Previous Output:
{context}
"""


def format_agent_system_prompt(instruction: str) -> str:
    """Format a specialist agent's system prompt."""
    instruction = instruction.strip().rstrip(".") or "Deliver the next actionable step"
    return f"{instruction}. {AGENT_SYSTEM_SUFFIX}"


def format_agent_prompt(problem: str, data: str, task: str, context: str) -> str:
    """Format a specialist agent's user prompt."""
    return AGENT_PROMPT.format(
        problem=problem,
        data=data,
        task=task or "Next step.",
        context=context,
    )


# =============================================================================
# Summary Prompts
# =============================================================================

SUMMARY_SYSTEM_PROMPT = "Summarize in <=120 words and include 2 follow-up recommendations."

SUMMARY_PROMPT = """Problem:
{problem}

Input Data:
{data}

Agent Outputs:
{outputs}"""


def format_summary_prompt(problem: str, data: str, outputs: str) -> str:
    """Format the final synthesis prompt."""
    return SUMMARY_PROMPT.format(problem=problem, data=data, outputs=outputs)
