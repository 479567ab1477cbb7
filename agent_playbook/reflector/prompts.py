# agent_playbook/reflector/prompts.py
from agent_playbook.core.schema import Bullet
from agent_playbook.search.client import SearchHit

REFLECTOR_SYSTEM_PROMPT = """You are an expert reviewer of coding-agent sessions \
that distills reusable lessons into a shared playbook of rules.

Your role is to:
1. Spot new, reusable insights not already covered by the playbook
2. Mark existing bullets that proved helpful or harmful (by ID)
3. Propose rewording for bullets that are close but imprecise
4. Flag bullets that are outdated

CRITICAL RULES:
- Output ONLY valid JSON: {"deltas": [...]}
- NO markdown fencing (no ```json)
- Each rule must be SPECIFIC, ACTIONABLE and REUSABLE by a different agent
- Maximum 20 deltas per reflection; prefer quality over quantity"""

REFLECTOR_USER_TEMPLATE = """Extract playbook deltas from this session.

<existing_playbook>
{existing_bullets}
</existing_playbook>

<session_diary>
{diary}
</session_diary>

<related_history>
{evidence}
</related_history>

{iteration_note}

Delta shapes:
- {{"type": "add", "bullet": {{"content": str, "category": str, "tags": [str]}}, "reason": str}}
- {{"type": "helpful", "bulletId": str, "context": str}}
- {{"type": "harmful", "bulletId": str, "reason": "caused_bug"|"wasted_time"|"contradicted_requirements"|"wrong_context"|"outdated"|"other", "context": str}}
- {{"type": "replace", "bulletId": str, "newContent": str, "reason": str}}
- {{"type": "deprecate", "bulletId": str, "reason": str}}
- {{"type": "merge", "bulletIds": [str, str], "mergedContent": str, "reason": str}}

Output pure JSON (no markdown fencing):"""


def _maturity_icon(maturity: str) -> str:
    if maturity == "proven":
        return "★"
    if maturity == "established":
        return "●"
    return "○"


def format_bullets_for_prompt(bullets: list[Bullet]) -> str:
    """Group active bullets by category as ``- [id] icon content (h+ / x-)`` lines."""
    active = [b for b in bullets if b.is_active]
    if not active:
        return "(Playbook is empty)"

    by_category: dict[str, list[Bullet]] = {}
    for bullet in active:
        by_category.setdefault(bullet.category or "uncategorized", []).append(bullet)

    sections = []
    for category, group in by_category.items():
        lines = [f"### {category}"]
        for b in group:
            lines.append(
                f"- [{b.id}] {_maturity_icon(b.maturity)} {b.content} "
                f"({b.helpful_count}+ / {b.harmful_count}-)"
            )
        sections.append("\n".join(lines))
    return "\n\n".join(sections)


def format_history(hits: list[SearchHit], limit: int = 3) -> str:
    if not hits:
        return "(No related history found)"
    return "\n---\n".join(
        f'Session: {h.session_path}\nAgent: {h.agent}\nSnippet: "{h.snippet}"' for h in hits[:limit]
    )


def iteration_note(iteration: int) -> str:
    if iteration == 0:
        return ""
    return (
        f"This is pass {iteration + 1}. Earlier passes already produced deltas; "
        "only output insights that are genuinely NEW."
    )


def format_reflector_prompt(
    diary: str,
    existing_bullets: str,
    evidence: str = "",
    iteration: int = 0,
) -> tuple[str, str]:
    """Format the reflector prompt.

    Returns:
        (system_prompt, user_prompt)
    """
    user_prompt = REFLECTOR_USER_TEMPLATE.format(
        existing_bullets=existing_bullets or "(Playbook is empty)",
        diary=diary or "(empty)",
        evidence=evidence or "(No related history found)",
        iteration_note=iteration_note(iteration),
    )
    return REFLECTOR_SYSTEM_PROMPT, user_prompt
