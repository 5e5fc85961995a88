"""Subject line variations for re-identifying emails of one booking type.

The reprocessing collaborator searches the mailbox for every variation of an
email's subject, so forwarded and replied copies are found as well.
"""

from __future__ import annotations

from collections.abc import Iterable

from tripmail.db.records import SubjectPattern

_PREFIXES = ("Fwd: ", "Re: ")


def subject_variations(subject: str, patterns: Iterable[SubjectPattern]) -> list[str]:
    """Build the ordered, de-duplicated list of subjects to search for.

    Order: the original subject, the subject with its first `Fwd: ` removed,
    the subject with its first `Re: ` removed, then for every active pattern
    contained in the subject (case-insensitive) the pattern itself followed by
    its variations.

    Args:
        subject: Original subject line
        patterns: Subject patterns of the email's booking type

    Returns:
        Unique subject strings in first-seen order
    """
    variations = [subject]
    variations.extend(subject.replace(prefix, "", 1) for prefix in _PREFIXES)

    subject_lower = subject.lower()
    for pattern in patterns:
        if not pattern.is_active or not pattern.pattern:
            continue
        if pattern.pattern.lower() in subject_lower:
            variations.append(pattern.pattern)
            variations.extend(pattern.variations)

    return list(dict.fromkeys(v for v in variations if v))
