"""
Vendorflow — AI API service.
Multi-provider: GitHub Models (OpenAI) and Anthropic (Claude).
Async with retry and JSON extraction; LLMCapability builds the outreach,
document-verification and classification prompts on top of it.
"""

import json
import re
import asyncio
import logging
from datetime import date

import aiohttp

from vendorflow.config import Settings, settings
from vendorflow.errors import CapabilityError
from vendorflow.schemas import ConversationTurn, DocumentType, VerificationResult
from vendorflow.services.capabilities import AICapability

logger = logging.getLogger(__name__)

TIMEOUT = aiohttp.ClientTimeout(total=120)

# Anthropic API version header
ANTHROPIC_VERSION = "2023-06-01"


async def call_ai(
    messages: list[dict],
    temperature: float = 0.7,
    max_tokens: int = 2000,
    model: str | None = None,
    retries: int = 2,
    config: Settings | None = None,
) -> str:
    """Call AI chat completion API with retry logic.

    Works transparently with both GitHub Models (OpenAI) and Anthropic (Claude).
    Provider is selected via AI_PROVIDER env var. Raises CapabilityError once
    retries are exhausted.
    """
    cfg = config or settings
    token = cfg.ai_auth_token
    if not token:
        if cfg.ai_provider == "anthropic":
            raise CapabilityError("ANTHROPIC_API_KEY not set — cannot call Claude API")
        raise CapabilityError("AI_TOKEN not set — cannot call AI API")

    used_model = model or cfg.ai_effective_model
    last_err: Exception | None = None

    for attempt in range(1, retries + 2):
        try:
            return await _request(messages, temperature, max_tokens, used_model, token, cfg)
        except (CapabilityError, aiohttp.ClientError, asyncio.TimeoutError, ValueError) as err:
            last_err = err
            if attempt <= retries:
                msg = str(err)
                rate_limited = "429" in msg or "RateLimitReached" in msg or "overloaded" in msg.lower()
                wait_match = re.search(r"wait\s+(\d+)\s+second", msg, re.I)
                if rate_limited:
                    wait = (int(wait_match.group(1)) + 2 if wait_match else 25)
                else:
                    wait = attempt * 2
                logger.warning(
                    "AI retry %d/%d — waiting %ds%s...",
                    attempt, retries, wait, " (rate limited)" if rate_limited else "",
                )
                await asyncio.sleep(wait)

    if isinstance(last_err, CapabilityError):
        raise last_err
    raise CapabilityError(f"AI request failed: {last_err}") from last_err


async def _request(
    messages: list[dict],
    temperature: float,
    max_tokens: int,
    model: str,
    token: str,
    cfg: Settings,
) -> str:
    """Dispatch to the correct provider."""
    if cfg.ai_provider == "anthropic":
        return await _request_anthropic(messages, temperature, max_tokens, model, token, cfg.ai_effective_url)
    return await _request_openai(messages, temperature, max_tokens, model, token, cfg.ai_effective_url)


async def _request_openai(
    messages: list[dict],
    temperature: float,
    max_tokens: int,
    model: str,
    token: str,
    url: str,
) -> str:
    """GitHub Models / OpenAI-compatible endpoint."""
    payload = {
        "model": model,
        "messages": messages,
        "max_tokens": max_tokens,
        "temperature": temperature,
    }
    headers = {
        "Authorization": f"Bearer {token}",
        "Content-Type": "application/json",
    }
    async with aiohttp.ClientSession(timeout=TIMEOUT) as session:
        async with session.post(url, json=payload, headers=headers) as resp:
            body = await resp.text()
            if resp.status != 200:
                raise CapabilityError(f"AI API HTTP {resp.status}: {body[:500]}")
            data = json.loads(body)
            content = data.get("choices", [{}])[0].get("message", {}).get("content", "")
            return strip_fences(content)


async def _request_anthropic(
    messages: list[dict],
    temperature: float,
    max_tokens: int,
    model: str,
    token: str,
    url: str,
) -> str:
    """Anthropic Messages API (Claude).

    Differences from OpenAI format:
    - system prompt is a top-level field, not in messages
    - header uses x-api-key instead of Authorization Bearer
    - response is content[0].text instead of choices[0].message.content
    """
    system_parts: list[str] = []
    user_messages: list[dict] = []
    for msg in messages:
        if msg.get("role") == "system":
            system_parts.append(msg["content"])
        else:
            user_messages.append(msg)

    # Anthropic requires at least one non-system message
    if not user_messages:
        user_messages = [{"role": "user", "content": "Hello"}]

    payload: dict = {
        "model": model,
        "messages": user_messages,
        "max_tokens": max_tokens,
        "temperature": temperature,
    }
    if system_parts:
        payload["system"] = "\n\n".join(system_parts)

    headers = {
        "x-api-key": token,
        "anthropic-version": ANTHROPIC_VERSION,
        "Content-Type": "application/json",
    }

    async with aiohttp.ClientSession(timeout=TIMEOUT) as session:
        async with session.post(url, json=payload, headers=headers) as resp:
            body = await resp.text()
            if resp.status != 200:
                raise CapabilityError(f"Anthropic API HTTP {resp.status}: {body[:500]}")
            data = json.loads(body)
            blocks = data.get("content", [])
            text_parts = [b["text"] for b in blocks if b.get("type") == "text"]
            return strip_fences("\n".join(text_parts))


# ── Parsing helpers ─────────────────────────────────────────────


def strip_fences(text: str) -> str:
    """Remove markdown code fences."""
    text = re.sub(r"^```(?:json|text|markdown)?\s*\n?", "", text, flags=re.MULTILINE)
    text = re.sub(r"^```\s*$", "", text, flags=re.MULTILINE)
    return text.strip()


def extract_json(text: str) -> dict:
    """Extract JSON object from AI response."""
    cleaned = strip_fences(text)

    # Try full text
    try:
        return json.loads(cleaned)
    except json.JSONDecodeError:
        pass

    # Try outermost { ... }
    start = cleaned.find("{")
    end = cleaned.rfind("}")
    if start != -1 and end > start:
        try:
            return json.loads(cleaned[start : end + 1])
        except json.JSONDecodeError:
            pass

    raise ValueError(f"Could not extract JSON from AI response:\n{cleaned[:300]}…")


# ── Prompts ─────────────────────────────────────────────────────

OUTREACH_SYSTEM = (
    "You are a Vendor Relations Manager recruiting independent facility-service "
    "contractors. Write short, professional, opportunity-driven outreach."
)

STRATEGY_ACTIVE = """
- Mental model: a job notification. Direct and urgent.
- Hook: a project is ready now in their area.
- Value: the budget / contract is already secured.
- CTA: ask when they could start.
"""

STRATEGY_SUPPLY = """
- Mental model: an invitation to a preferred-vendor list.
- Hook: we are expanding our network in their area for upcoming contracts.
- Value: preferred access to jobs without sales effort.
- CTA: open to a brief intro to be on our shortlist?
"""


def build_outreach_prompt(profile: dict) -> str:
    active = bool(profile.get("hasActiveContract"))
    scenario = "Active Contract" if active else "Building Supply"
    return f"""Write a cold outreach email body to "{profile.get('companyName')}"
(Specialty: {profile.get('specialty') or 'general services'}, Location: {profile.get('location') or 'your area'}).

Scenario: {scenario}

Strategy:
{STRATEGY_ACTIVE if active else STRATEGY_SUPPLY}
Core value (always): we handle sales and admin and ensure on-time payment.

Formatting:
- Max 100 words.
- One sentence per paragraph.
- Return ONLY the email body text, no subject line, no JSON."""


def simulated_document_text(doc_type: str, vendor_name: str, today: date | None = None) -> str:
    """Stand-in for OCR output until documents are read by a vision model."""
    today = today or date.today()
    if doc_type == DocumentType.COI.value:
        expires = today.replace(year=today.year + 1, day=min(today.day, 28))
        return f"""CERTIFICATE OF LIABILITY INSURANCE
PRODUCER: State Farm Insurance
INSURED: {vendor_name}

COVERAGES:
COMMERCIAL GENERAL LIABILITY
EACH OCCURRENCE: $2,000,000
DAMAGE TO RENTED PREMISES: $100,000
MED EXP: $5,000
PERSONAL & ADV INJURY: $2,000,000
GENERAL AGGREGATE: $4,000,000

WORKERS COMPENSATION
STATUTORY LIMITS: YES
E.L. EACH ACCIDENT: $1,000,000

POLICY EFF: 01/01/{today.year}
POLICY EXP: {expires.strftime('%m/%d/%Y')}"""
    return f"""Form W-9
Name: {vendor_name}
Business Name: {vendor_name} LLC
Federal Tax Classification: Limited Liability Company
Address: 123 Main St
TIN: XX-XXX1234
Signed: JS
Date: 01/15/{today.year}"""


def build_verification_prompt(doc_type: str, vendor_name: str, specialty: str, document_text: str) -> str:
    requirement = (
        "Must have General Liability > $1,000,000 and valid dates."
        if doc_type == DocumentType.COI.value
        else "Must be signed and have a TIN."
    )
    return f"""You are an expert Insurance Compliance Officer.
Analyze the following OCR text extracted from a {doc_type} document for vendor "{vendor_name}" ({specialty}).

Requirements:
1. Name must match "{vendor_name}" (fuzzy match ok).
2. {requirement}

OCR Text:
\"\"\"
{document_text}
\"\"\"

Output strictly JSON:
{{
    "valid": boolean,
    "reasoning": "string (concise summary for admin)",
    "extracted": {{ key fields found }}
}}"""


class LLMCapability(AICapability):
    """AICapability backed by call_ai().

    ``chat`` handles conversational onboarding (see services.onboarding_chat);
    it is optional so the dispatcher can run without the chat surface.
    """

    def __init__(self, config: Settings | None = None, chat=None):
        self._config = config or settings
        self._chat = chat

    def attach_chat(self, chat) -> None:
        self._chat = chat

    async def _call(self, messages: list[dict], **kwargs) -> str:
        return await call_ai(messages, config=self._config, **kwargs)

    async def generate_message(self, vendor_profile: dict) -> str:
        text = await self._call(
            [
                {"role": "system", "content": OUTREACH_SYSTEM},
                {"role": "user", "content": build_outreach_prompt(vendor_profile)},
            ],
            temperature=0.7,
            max_tokens=600,
        )
        return text.strip()

    async def verify_document(self, doc_type: str, vendor_name: str, specialty: str) -> VerificationResult:
        document_text = simulated_document_text(doc_type, vendor_name)
        text = await self._call(
            [{"role": "user", "content": build_verification_prompt(doc_type, vendor_name, specialty, document_text)}],
            temperature=0.1,
            max_tokens=800,
        )
        try:
            data = extract_json(text)
            return VerificationResult(
                valid=bool(data.get("valid")),
                reasoning=str(data.get("reasoning") or ""),
                extracted=data.get("extracted") or {},
            )
        except ValueError as e:
            raise CapabilityError(f"Unreadable verification verdict: {e}") from e

    async def classify(self, text: str, instructions: str) -> str:
        """Single-label classification, upper-cased (e.g. YES, NO, YES_CORRECT_ENTITY)."""
        label = await self._call(
            [{
                "role": "user",
                "content": (
                    f'Analyze this user response: "{text}".\n'
                    f"Instruction: {instructions}\n\n"
                    "Return ONLY the classification label (e.g., YES, NO, YES_CORRECT_ENTITY)."
                ),
            }],
            temperature=0,
            max_tokens=20,
        )
        return label.strip().upper()

    async def advance_conversation(self, vendor_id: str, user_message: str) -> ConversationTurn:
        if self._chat is None:
            raise CapabilityError("Onboarding chat is not configured")
        return await self._chat.next_turn(vendor_id, user_message)
