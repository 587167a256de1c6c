"""
Message generation - writes one email (subject + body) for an offer in a given
style combination. Provider fallback lives in services/ai.generate_response;
this module owns the prompt and the JSON contract.
"""
import json
import logging
from dataclasses import dataclass

from stylelab.errors import ProviderError
from stylelab.schemas.optimization import OfferBrief
from stylelab.schemas.style import StyleCombination
from stylelab.services.ai import generate_response

logger = logging.getLogger(__name__)

SYSTEM_PROMPT = (
    "You are an expert email copywriter. You write marketing emails that follow "
    "the requested copywriting framework, writing style, tone and personality exactly. "
    'Respond with JSON only: {"subject": "...", "body": "..."}. '
    "The body is HTML using only <p>, <a>, <strong> and <br> tags."
)

COPYWRITING_GUIDES = {
    "AIDA": "Attention, Interest, Desire, Action",
    "PAS": "Problem, Agitate, Solution",
    "BAB": "Before, After, Bridge",
    "PPP": "Picture, Promise, Prove, Push",
    "FAB": "Features, Advantages, Benefits",
    "QUEST": "Qualify, Understand, Educate, Stimulate, Transition",
}

MAX_SUBJECT_LENGTH = 200


@dataclass
class GeneratedMessage:
    subject: str
    body: str
    generated_prompt: str
    provider_used: str
    cost_usd: float = 0.0


def build_prompt(
    offer: OfferBrief,
    style: StyleCombination,
    audience_description: str,
) -> str:
    framework = style.copywriting_style.value
    lines = [
        f"Write a marketing email promoting: {offer.name}.",
    ]
    if offer.description:
        lines.append(f"Offer details: {offer.description}")
    if offer.url:
        lines.append(f"Link to include as the call to action: {offer.url}")
    lines.extend([
        f"Audience: {audience_description}",
        "",
        f"Copywriting framework: {framework} ({COPYWRITING_GUIDES.get(framework, framework)})",
        f"Writing style: {style.writing_style.value}",
        f"Tone: {style.tone.value}",
        f"Personality: {style.personality.value}",
        "",
        "Keep the subject under 60 characters and the body under 200 words.",
    ])
    return "\n".join(lines)


def _parse_message(content: str) -> dict:
    content = (content or "").strip()
    if content.startswith("```"):
        content = content.split("\n", 1)[1].rsplit("```", 1)[0].strip()
    return json.loads(content)


async def generate_message(
    offer: OfferBrief,
    style: StyleCombination,
    audience_description: str,
) -> GeneratedMessage:
    """
    Generate one styled message.

    Raises:
        ProviderError: every provider failed or returned unusable output.
    """
    prompt = build_prompt(offer, style, audience_description)

    result = await generate_response(
        system_prompt=SYSTEM_PROMPT,
        user_message=prompt,
        json_mode=True,
    )
    provider = result.get("provider", "none")

    if result.get("error"):
        raise ProviderError(f"Message generation failed: {result['error']}", provider=provider)

    try:
        parsed = _parse_message(result.get("content", ""))
    except (json.JSONDecodeError, IndexError) as e:
        logger.error(
            "Failed to parse generated message: %s", str(e),
            extra={"provider": provider, "style_key": style.style_key()},
        )
        raise ProviderError(f"JSON parse error: {str(e)}", provider=provider) from e

    subject = str(parsed.get("subject", "")).strip()
    body = str(parsed.get("body", "")).strip()
    if not subject or not body:
        raise ProviderError("Generated message is missing subject or body", provider=provider)

    logger.info(
        "Message generated: style=%s provider=%s cost=$%.4f",
        style.label(), provider, result.get("cost_usd", 0.0),
    )
    return GeneratedMessage(
        subject=subject[:MAX_SUBJECT_LENGTH],
        body=body,
        generated_prompt=prompt,
        provider_used=provider,
        cost_usd=result.get("cost_usd", 0.0),
    )
