import re
import unicodedata

CJK_LANGUAGE_CODES = frozenset({"kor", "jpn", "jpn_vert", "chi_sim", "chi_tra"})
SPACELESS_LANGUAGE_CODES = CJK_LANGUAGE_CODES | {"tha"}

CJK_CHAR_RE = re.compile(
    r"[\u3040-\u30FF\u3400-\u4DBF\u4E00-\u9FFF\uF900-\uFAFF\uAC00-\uD7AF]"
)
THAI_CHAR_RE = re.compile(r"[\u0E00-\u0E7F]")
KOREAN_SYLLABLE_RE = re.compile(r"[\uAC00-\uD7AF]")
KOREAN_JAMO_RE = re.compile(r"[\u1100-\u11FF\u3130-\u318F\uA960-\uA97F\uD7B0-\uD7FF]")


def normalize_text(text: str) -> str:
    """Collapse whitespace for OCR-derived strings.

    Engines emit tokens with stray newlines and doubled spaces; every token is
    normalized before it becomes a `Word`, so filters and joins compare
    consistent text.
    """
    return " ".join(text.split())


def alnum_content(text: str) -> str:
    """Return only the letters and digits of `text`, in any script."""
    return "".join(ch for ch in text if ch.isalnum())


def normalize_token(text: str) -> str:
    """Normalize a token for vocabulary comparison.

    Lower-cases and strips everything that is not a letter or digit, so
    `"Hello,"` and `"hello"` land on the same vocabulary entry.
    """
    return alnum_content(text.lower())


def is_non_latin(text: str) -> bool:
    return any(ord(ch) > 127 for ch in text)


def has_cjk(text: str) -> bool:
    return CJK_CHAR_RE.search(text) is not None


def has_thai(text: str) -> bool:
    return THAI_CHAR_RE.search(text) is not None


def is_punctuation(text: str) -> bool:
    return bool(text) and all(unicodedata.category(ch).startswith("P") for ch in text)


def language_codes(language: str) -> list[str]:
    return [code.strip() for code in language.split("+") if code.strip()]


def canonical_language(language: str) -> str:
    """Canonicalize a language set such as ``" kor+eng+kor"`` to ``"eng+kor"``."""
    return "+".join(sorted(set(language_codes(language))))


def is_cjk_language(language: str) -> bool:
    return any(code in CJK_LANGUAGE_CODES for code in language_codes(language))


def is_spaceless_language(language: str) -> bool:
    return any(code in SPACELESS_LANGUAGE_CODES for code in language_codes(language))


def is_latin_language(language: str) -> bool:
    return not is_spaceless_language(language)
