"""
Prompt text for the Gemini-backed extractors and email generator.
"""

from typing import Optional

from .models import ComposeOptions, ContactRecord, Language, SenderIdentity, Tone


# =========================
# OCR
# =========================

TRANSCRIPTION_PROMPT = """Transcribe ALL visible text on this business card image.

Return a JSON object with these exact fields:
{
    "raw_text": "All visible text, one line per printed line, top to bottom",
    "confidence": 0.0
}

Rules:
- Transcribe EXACTLY what you see, don't invent information
- Keep Japanese text in its original script
- "confidence" is your 0-1 estimate of transcription accuracy
- Return ONLY valid JSON, no markdown or explanation"""


# =========================
# CONTACT EXTRACTION
# =========================

EXTRACTION_PROMPTS = {
    Language.PRIMARY: """あなたは名刺の情報を抽出する専門家です。与えられたOCRテキストから以下の情報を抽出してください：
- name: 氏名
- company: 会社名
- role: 役職
- email: メールアドレス
- phone: 電話番号
- confidence: 抽出結果の信頼度 (0-1の間)

情報が見つからない場合は、そのフィールドを空文字列にしてください。
日本語の名刺の場合、姓名の間にスペースを入れてください。
JSONオブジェクトのみを返してください。""",
    Language.SECONDARY: """You are an expert at extracting information from business cards. Extract the following from the given OCR text:
- name: Full name
- company: Company name
- role: Job title/position
- email: Email address
- phone: Phone number
- confidence: Confidence level of the extraction (0-1)

If information is not found, leave the field as an empty string.
Return ONLY a JSON object.""",
}


def extraction_user_prompt(raw_text: str) -> str:
    return f"OCR text:\n{raw_text}"


# =========================
# EMAIL COMPOSITION
# =========================

_JSON_FORMAT = {
    Language.PRIMARY: '\n\n出力形式: {"subject": "件名", "body": "本文"} のJSONのみ。',
    Language.SECONDARY: '\n\nOutput format: JSON only, {"subject": "...", "body": "..."}.',
}

# Streaming responses are plain text so the subject can surface first
STREAM_FORMAT = {
    Language.PRIMARY: "\n\n出力形式: 1行目に「件名: 」で始まる件名、次の行に「---」、その後に本文。",
    Language.SECONDARY: '\n\nOutput format: first line "Subject: " followed by the subject, then a line "---", then the body.',
}

SYSTEM_PROMPTS = {
    (Language.PRIMARY, Tone.PROFESSIONAL): """あなたは日本のビジネスマナーに精通したプロフェッショナルなメール作成専門家です。
名刺交換後の初回連絡メールを作成してください。以下の点を考慮してください：

- 丁寧で敬語を適切に使用
- 簡潔で要点が明確（150字前後）
- 結論→理由→お願いの順
- 件名は分かりやすく具体的に
- 最後は「ご返信お待ちしております。」で締める""",
    (Language.PRIMARY, Tone.FRIENDLY): """フレンドリーで親しみやすい、でも礼儀正しいビジネスメールを作成してください。
堅すぎず、でも失礼にならない程度の親近感のある文面で。""",
    (Language.PRIMARY, Tone.CASUAL): """カジュアルで親しみやすいメールを作成してください。
敬語は最低限に留めて、自然な会話調で。""",
    (Language.SECONDARY, Tone.PROFESSIONAL): """You are a professional business email specialist. Create a follow-up email after exchanging business cards.
Consider these points:

- Professional and polite tone
- Clear and concise content
- Focus on building future business relationships
- Clear and specific subject line""",
    (Language.SECONDARY, Tone.FRIENDLY): """Create a friendly yet professional business email following up on a business card exchange.
Use a warm tone while maintaining business appropriateness.""",
    (Language.SECONDARY, Tone.CASUAL): """Create a casual and approachable email following up on a business card exchange.
Use a conversational tone while remaining respectful.""",
}


def system_prompt(tone: Tone, language: Language, streaming: bool = False) -> str:
    """One of the six tone x language prompts plus the output format."""
    base = SYSTEM_PROMPTS[(language, tone)]
    return base + (STREAM_FORMAT[language] if streaming else _JSON_FORMAT[language])


def compose_user_prompt(
    contact: ContactRecord,
    options: ComposeOptions,
    sender: Optional[SenderIdentity] = None
) -> str:
    """Embed the card fields, sender and custom message in the user prompt."""
    if options.language == Language.PRIMARY:
        unknown = "不明"
        lines = ["以下の情報を元に、名刺交換後のフォローアップメールを作成してください：", ""]
        if sender and sender.name:
            lines.append("送信者情報：")
            lines.append(f"- 名前: {sender.name}")
            if sender.company:
                lines.append(f"- 会社: {sender.company}")
            lines.append("")
        lines.extend([
            "受信者情報（名刺から抽出）：",
            f"- 名前: {contact.name or unknown}",
            f"- 会社: {contact.company or unknown}",
            f"- 役職: {contact.role or unknown}",
            f"- メール: {contact.email or unknown}",
        ])
        if contact.phone:
            lines.append(f"- 電話: {contact.phone}")
        if options.custom_message:
            lines.extend(["", f"特別なメッセージ: {options.custom_message}"])
        lines.extend(["", "件名と本文を含む完全なメールを作成してください。"])
    else:
        unknown = "Unknown"
        lines = ["Create a follow-up email after exchanging business cards with the following information:", ""]
        if sender and sender.name:
            lines.append("Sender Information:")
            lines.append(f"- Name: {sender.name}")
            if sender.company:
                lines.append(f"- Company: {sender.company}")
            lines.append("")
        lines.extend([
            "Recipient Information (extracted from business card):",
            f"- Name: {contact.name or unknown}",
            f"- Company: {contact.company or unknown}",
            f"- Role: {contact.role or unknown}",
            f"- Email: {contact.email or unknown}",
        ])
        if contact.phone:
            lines.append(f"- Phone: {contact.phone}")
        if options.custom_message:
            lines.extend(["", f"Special message: {options.custom_message}"])
        lines.extend(["", "Create a complete email including subject and body."])
    return "\n".join(lines)
