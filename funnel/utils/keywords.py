"""
Keyword gates: consent replies and photo-request detection.
Tables map language -> trigger phrases; adding a locale means adding a row.
"""
import re
from typing import Optional

CONSENT_AFFIRMATIVE = {
    "en": ["yes", "yeah", "yep", "ok", "okay", "i agree", "agree", "i approve", "approve", "accept", "sure"],
    "tr": ["evet", "kabul", "kabul ediyorum", "onaylıyorum", "onayliyorum", "onay", "tamam", "olur"],
    "ar": ["نعم", "موافق", "أوافق", "اوافق", "أقبل"],
    "fr": ["oui", "d'accord", "j'accepte", "j'approuve", "accepte"],
    "ru": ["да", "согласен", "согласна", "принимаю"],
}

# Multi-word negatives contain affirmative stems ("kabul etmiyorum", "do not agree")
CONSENT_NEGATIVE = {
    "en": ["no", "nope", "i decline", "decline", "i disagree", "don't agree", "do not agree", "reject"],
    "tr": ["hayır", "hayir", "kabul etmiyorum", "onaylamıyorum", "onaylamiyorum", "istemiyorum"],
    "ar": ["لا", "لا أوافق", "لا اوافق", "أرفض"],
    "fr": ["non", "je refuse", "refuse", "pas d'accord"],
    "ru": ["нет", "не согласен", "не согласна", "отказываюсь"],
}

PHOTO_REQUEST_KEYWORDS = {
    "en": ["photo", "picture", "image", "send us", "upload"],
    "tr": ["fotoğraf", "fotograf", "resim", "görsel", "gönderin", "yükleyin"],
    "ar": ["صور", "صورة", "ارسل", "أرسل"],
    "ru": ["фото", "фотографи", "снимок", "отправьте", "загрузите"],
    "fr": ["photo", "image", "envoyez"],
}

# Numbered angle instructions ("1. front", "2. **önden**") and "photos from ... angles"
PHOTO_INSTRUCTION_PATTERNS = [
    re.compile(
        r"\d+\.\s*\*{0,2}(front|top|back|left|right|side|önden|ön|tepe|arka|sol|sağ|yan|"
        r"الأمام|الخلف|спереди|сверху|сзади|face|dessus|arrière|gauche|droite)",
        re.IGNORECASE,
    ),
    re.compile(r"açılardan.*fotoğraf", re.IGNORECASE),
    re.compile(r"photos? from.*angles?", re.IGNORECASE),
    re.compile(r"photos? sous plusieurs angles", re.IGNORECASE),
]


def _normalize(text: str) -> str:
    return " ".join((text or "").lower().split())


def _first_match(text: str, phrases: list[str]) -> Optional[tuple[int, int]]:
    """(position, -length) of the earliest phrase in text; longer wins a tie."""
    best = None
    for phrase in phrases:
        match = re.search(r"(?<!\w)" + re.escape(phrase) + r"(?!\w)", text)
        if match is not None:
            key = (match.start(), -len(phrase))
            if best is None or key < best:
                best = key
    return best


def _phrases(table: dict, language: Optional[str]) -> list[str]:
    # Every locale is scanned: patients often answer in a language other than the detected one
    lang = (language or "en").lower()[:2]
    ordered = list(table.get(lang, []))
    for key, phrases in table.items():
        if key != lang:
            ordered.extend(phrases)
    return ordered


def match_consent_reply(text: str, language: Optional[str] = None) -> Optional[bool]:
    """
    True for an affirmative reply, False for a negative one, None when the
    reply is neither (the caller sends a reminder).

    The reply's leading answer wins: "yes, no problem" approves while
    "no, I don't agree" declines. At the same position the longer phrase
    wins, so "kabul etmiyorum" never reads as "kabul".
    """
    normalized = _normalize(text)
    if not normalized:
        return None
    negative = _first_match(normalized, _phrases(CONSENT_NEGATIVE, language))
    affirmative = _first_match(normalized, _phrases(CONSENT_AFFIRMATIVE, language))
    if negative is None and affirmative is None:
        return None
    if negative is None:
        return True
    if affirmative is None:
        return False
    return affirmative < negative


def is_photo_request(text: str, language: Optional[str] = None) -> bool:
    """Whether a drafted reply asks the patient for photos. English keywords always apply."""
    if not text:
        return False
    lowered = text.lower()
    lang = (language or "en").lower()[:2]
    keywords = set(PHOTO_REQUEST_KEYWORDS.get(lang, [])) | set(PHOTO_REQUEST_KEYWORDS["en"])
    if any(keyword in lowered for keyword in keywords):
        return True
    return any(pattern.search(text) for pattern in PHOTO_INSTRUCTION_PATTERNS)
