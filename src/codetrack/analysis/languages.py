"""Language breakdown across a user's repositories."""
from typing import Any, Dict, Mapping, Sequence


def language_breakdown(per_project: Sequence[Mapping[str, float]]) -> Dict[str, Any]:
    """
    Combine per-project language shares into one breakdown.

    GitLab reports each project's languages as percentages of that project,
    so every project carries equal weight. Languages are sorted by share,
    largest first; percentages are rounded to one decimal place.
    """
    totals: Dict[str, float] = {}
    for languages in per_project:
        for name, share in languages.items():
            totals[name] = totals.get(name, 0.0) + float(share)

    grand_total = sum(totals.values())
    ranked = sorted(totals.items(), key=lambda item: (-item[1], item[0]))
    return {
        "totalLanguages": len(ranked),
        "primaryLanguage": ranked[0][0] if ranked else None,
        "languages": [
            {
                "language": name,
                "percentage": round(share / grand_total * 100, 1) if grand_total else 0.0,
            }
            for name, share in ranked
        ],
        "projectsAnalyzed": len(per_project),
    }
