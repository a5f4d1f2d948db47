"""
Localization helpers

Localized strings in a form definition are either a plain string or a
language -> string dict. Languages are normalized to lower-case codes.
Default validation messages ship in English, French and Dutch.
"""

from typing import Any, Dict, Optional

DEFAULT_LANGUAGE = 'en'

# Placeholders: {field}, {min}, {max}, {values}
DEFAULT_MESSAGES: Dict[str, Dict[str, str]] = {
    'required': {
        'en': 'This field is required.',
        'fr': 'Ce champ est obligatoire.',
        'nl': 'Dit veld is verplicht.',
    },
    'min': {
        'en': 'Must be at least {min}.',
        'fr': 'Doit être au moins {min}.',
        'nl': 'Moet minstens {min} zijn.',
    },
    'max': {
        'en': 'Must be at most {max}.',
        'fr': 'Doit être au plus {max}.',
        'nl': 'Mag maximaal {max} zijn.',
    },
    'allowed': {
        'en': 'Must be one of: {values}.',
        'fr': 'Doit être parmi : {values}.',
        'nl': 'Moet een van de volgende zijn: {values}.',
    },
    'disallowed': {
        'en': 'Not allowed: {values}.',
        'fr': 'Non autorisé : {values}.',
        'nl': 'Niet toegestaan: {values}.',
    },
    'invalid': {
        'en': 'This combination is not allowed.',
        'fr': "Cette combinaison n'est pas autorisée.",
        'nl': 'Deze combinatie is niet toegestaan.',
    },
    'duplicate': {
        'en': 'Duplicate entry.',
        'fr': 'Entrée en double.',
        'nl': 'Dubbele invoer.',
    },
    'min_rows': {
        'en': 'Add at least {min} row(s).',
        'fr': 'Ajoutez au moins {min} ligne(s).',
        'nl': 'Voeg minstens {min} rij(en) toe.',
    },
    'max_rows': {
        'en': 'At most {max} row(s) allowed.',
        'fr': 'Au plus {max} ligne(s) autorisée(s).',
        'nl': 'Maximaal {max} rij(en) toegestaan.',
    },
}


def normalize_language(language: Optional[str], default: str = DEFAULT_LANGUAGE) -> str:
    """'FR', 'fr-BE' and ' fr ' all become 'fr'."""
    if not language or not isinstance(language, str):
        return default
    code = language.strip().lower().replace('_', '-').split('-')[0]
    return code or default


def resolve_localized_string(
    value: Any,
    language: Optional[str],
    fallback: str = '',
    default_language: str = DEFAULT_LANGUAGE,
) -> str:
    """
    Pick the string for `language` from a localized value.

    Order: requested language, default language, 'en', first non-empty
    entry, fallback.
    """
    if value is None:
        return fallback
    if isinstance(value, str):
        return value
    if not isinstance(value, dict):
        return str(value)

    lowered = {str(k).lower(): v for k, v in value.items()}
    for code in (normalize_language(language, default_language), default_language, DEFAULT_LANGUAGE):
        text = lowered.get(code)
        if isinstance(text, str) and text:
            return text
    for text in lowered.values():
        if isinstance(text, str) and text:
            return text
    return fallback


def default_message(key: str, language: Optional[str], **params: Any) -> str:
    """Localized built-in message with placeholders filled."""
    template = resolve_localized_string(DEFAULT_MESSAGES.get(key), language, fallback=key)
    try:
        return template.format(**params)
    except (KeyError, IndexError):
        return template
