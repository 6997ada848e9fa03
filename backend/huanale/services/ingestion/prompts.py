"""Extraction prompts. Every source asks for ``{"transactions": [...]}``."""

BILL_PROMPT = " ".join(
    [
        "Extract ALL line items from this receipt/purchase order image. Return JSON only.",
        'Schema: {"transactions": [{"title": string, "amount": number, "currency": string, '
        '"category": string, "merchant": string}, ...]}.',
        "Each line item is a separate transaction. Do not combine items.",
        "If only one item, still return array with one element.",
        "No markdown, no explanation, JSON only.",
    ]
)

VOICE_PROMPT = " ".join(
    [
        "Extract ALL transactions from the transcript. Return JSON only.",
        'Schema: {"transactions": [{"title": string, "amount": number, "currency": string, '
        '"category": string, "type": "expense"|"income"}, ...]}.',
        "If only one item mentioned, still return array with one element.",
        "If data is ambiguous, infer best effort values and keep amount numeric.",
        "No markdown, no explanation, JSON only.",
    ]
)

TEXT_PROMPT = " ".join(
    [
        "Extract ALL transactions from the user input text. Return JSON only.",
        'Schema: {"transactions": [{"title": string, "amount": number, "currency": string, '
        '"category": string, "type": "expense"|"income"}, ...]}.',
        "If only one item mentioned, still return array with one element.",
        "If data is ambiguous, infer best effort values and keep amount numeric.",
        "No markdown, no explanation, JSON only.",
    ]
)


def voice_messages(transcript: str) -> list[dict[str, str]]:
    return [
        {"role": "system", "content": VOICE_PROMPT},
        {"role": "user", "content": f"Transcript: {transcript}"},
    ]


def text_messages(text: str) -> list[dict[str, str]]:
    return [
        {"role": "system", "content": TEXT_PROMPT},
        {"role": "user", "content": f"User input: {text}"},
    ]
