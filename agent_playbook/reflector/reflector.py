# agent_playbook/reflector/reflector.py
import logging
from dataclasses import dataclass, field

from agent_playbook.core.schema import DecisionLog, Playbook, PlaybookDelta
from agent_playbook.llm import LLMClient, LLMError, Message, create_llm_client
from agent_playbook.utils import hash_content, log_event, normalize_text

from .parser import DeltaParseError, parse_deltas
from .prompts import format_bullets_for_prompt, format_reflector_prompt

logger = logging.getLogger(__name__)


def delta_key(delta: PlaybookDelta) -> str:
    """Identity of a delta for de-duplication across reflection passes."""
    if delta.type == "add":
        # Category differences do not make the same rule new
        return f"add:{hash_content(delta.bullet.content)}"
    if delta.type == "replace":
        return f"replace:{delta.bullet_id}:{normalize_text(delta.new_content)}"
    if delta.type == "merge":
        return f"merge:{','.join(sorted(delta.bullet_ids))}"
    return f"{delta.type}:{delta.bullet_id}"


def deduplicate_deltas(new: list[PlaybookDelta], existing: list[PlaybookDelta]) -> list[PlaybookDelta]:
    seen = {delta_key(d) for d in existing}
    unique = []
    for delta in new:
        key = delta_key(delta)
        if key in seen:
            continue
        seen.add(key)
        unique.append(delta)
    return unique


@dataclass
class ReflectionResult:
    deltas: list[PlaybookDelta] = field(default_factory=list)
    decision_log: DecisionLog = field(default_factory=DecisionLog)


class Reflector:
    """Turns a session diary into proposed playbook deltas via an LLM."""

    def __init__(
        self,
        llm_client: LLMClient | None = None,
        max_retries: int = 3,
        temperature: float = 0.3,
        max_iterations: int = 3,
        max_deltas: int = 20,
    ):
        """Initialize Reflector.

        Args:
            llm_client: LLM client for generating deltas. If None, creates one
                        from config using the factory.
            max_retries: Maximum retry attempts on parse errors
            temperature: LLM temperature (lower = more deterministic)
            max_iterations: Reflection passes per session
            max_deltas: Cap on deltas per pass and per session
        """
        self.max_retries = max_retries
        self.temperature = temperature
        self.max_iterations = max(1, max_iterations)
        self.max_deltas = max_deltas
        self.client = llm_client if llm_client is not None else create_llm_client()

    def extract_deltas(
        self,
        diary_text: str,
        existing_bullets_text: str,
        evidence_text: str = "",
        iteration: int = 0,
        session_path: str | None = None,
    ) -> list[PlaybookDelta]:
        """Run one reflection pass (with parse retries).

        Returns:
            At most ``max_deltas`` deltas

        Raises:
            DeltaParseError: If parsing fails after max_retries
        """
        system_prompt, user_prompt = format_reflector_prompt(
            diary=diary_text,
            existing_bullets=existing_bullets_text,
            evidence=evidence_text,
            iteration=iteration,
        )

        last_error = None
        for attempt in range(self.max_retries):
            try:
                response = self.client.complete(
                    messages=[
                        Message(role="system", content=system_prompt),
                        Message(role="user", content=user_prompt),
                    ],
                    temperature=self.temperature,
                )
                if not response.text:
                    raise DeltaParseError("Empty response from LLM")
                return parse_deltas(response.text, session_path=session_path, max_deltas=self.max_deltas)

            except DeltaParseError as e:
                last_error = e
                if attempt < self.max_retries - 1:
                    user_prompt += (
                        f"\n\nPrevious attempt failed: {e}. "
                        "Please output ONLY valid JSON without markdown fencing."
                    )
                    continue
                raise DeltaParseError(
                    f"Failed to parse deltas after {self.max_retries} attempts: {last_error}"
                ) from None

        raise DeltaParseError("Reflection produced no result")

    def reflect_on_session(
        self,
        diary_text: str,
        playbook: Playbook,
        session_path: str | None = None,
        evidence_text: str = "",
    ) -> ReflectionResult:
        """Run up to ``max_iterations`` passes and collect unique deltas.

        Stops early when a pass adds nothing new or the delta cap is reached.
        A failing pass ends the loop but keeps what earlier passes produced.
        """
        existing = format_bullets_for_prompt(playbook.bullets)
        collected: list[PlaybookDelta] = []
        log = DecisionLog()

        for i in range(self.max_iterations):
            try:
                generated = self.extract_deltas(
                    diary_text, existing, evidence_text, iteration=i, session_path=session_path
                )
            except (DeltaParseError, LLMError) as e:
                logger.warning(f"Reflection iteration {i + 1} failed: {e}")
                log = log.record("add", "rejected", f"Iteration {i + 1} failed: {e}", details={"iteration": i + 1})
                break

            unique = deduplicate_deltas(generated, collected)
            room = self.max_deltas - len(collected)
            unique = unique[:room]
            collected.extend(unique)
            log = log.record(
                "add",
                "accepted" if unique else "skipped",
                f"Iteration {i + 1}: {len(unique)} unique deltas "
                f"({len(generated) - len(unique)} duplicates removed)",
                details={"iteration": i + 1, "generatedCount": len(generated), "uniqueCount": len(unique)},
            )

            if not unique or len(collected) >= self.max_deltas:
                log = log.record(
                    "add",
                    "skipped",
                    f"Early exit at iteration {i + 1}: "
                    + ("no new deltas" if not unique else f"reached {len(collected)} total deltas"),
                )
                break

        log_event("reflection_stats", {"session_path": session_path, "deltas": len(collected)})
        return ReflectionResult(deltas=collected, decision_log=log)
