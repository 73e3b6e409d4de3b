"""Language codes the pipeline can detect, transcribe, translate into and dub."""

SUPPORTED_LANGUAGES = {
    'bn': 'Bengali', 'en': 'English', 'hi': 'Hindi', 'ta': 'Tamil', 'te': 'Telugu',
    'ml': 'Malayalam', 'ur': 'Urdu', 'pa': 'Punjabi', 'gu': 'Gujarati', 'kn': 'Kannada',
    'or': 'Odia', 'as': 'Assamese', 'mr': 'Marathi', 'ne': 'Nepali', 'si': 'Sinhala',
    'my': 'Myanmar', 'th': 'Thai', 'vi': 'Vietnamese', 'id': 'Indonesian', 'ms': 'Malay',
    'tl': 'Filipino', 'ja': 'Japanese', 'ko': 'Korean', 'zh': 'Chinese', 'ar': 'Arabic',
    'fa': 'Persian', 'tr': 'Turkish', 'ru': 'Russian', 'de': 'German', 'fr': 'French',
    'es': 'Spanish', 'it': 'Italian', 'pt': 'Portuguese', 'nl': 'Dutch', 'pl': 'Polish',
    'sv': 'Swedish', 'da': 'Danish', 'no': 'Norwegian', 'fi': 'Finnish', 'hu': 'Hungarian',
    'cs': 'Czech', 'sk': 'Slovak', 'sl': 'Slovenian', 'hr': 'Croatian', 'sr': 'Serbian',
    'bg': 'Bulgarian', 'ro': 'Romanian', 'uk': 'Ukrainian', 'he': 'Hebrew', 'sw': 'Swahili',
    'am': 'Amharic',
}

LANG_NAME_TO_CODE = {name.lower(): code for code, name in SUPPORTED_LANGUAGES.items()}
LANG_NAME_TO_CODE.update({'mandarin': 'zh', 'burmese': 'my', 'tagalog': 'tl', 'oriya': 'or'})
# three-letter codes some speech APIs report
LANG_NAME_TO_CODE.update({'ben': 'bn', 'eng': 'en', 'hin': 'hi', 'tam': 'ta', 'tel': 'te', 'mal': 'ml',
                          'urd': 'ur', 'spa': 'es', 'fra': 'fr', 'deu': 'de', 'jpn': 'ja', 'zho': 'zh'})

DEFAULT_LANGUAGE = 'en'


def normalize_language(value: str | None) -> str | None:
    """Map a provider's language label ('bn', 'Bengali', 'bengali') to a supported code."""
    if not value:
        return None
    v = value.strip().lower()
    if v in SUPPORTED_LANGUAGES:
        return v
    if '-' in v and v.split('-')[0] in SUPPORTED_LANGUAGES:
        return v.split('-')[0]
    return LANG_NAME_TO_CODE.get(v)


def language_name(code: str | None) -> str:
    if not code:
        return 'Unknown'
    return SUPPORTED_LANGUAGES.get(code.lower(), code)
