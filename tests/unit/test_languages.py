"""Tests for the cross-project language breakdown."""
from codetrack.analysis.languages import language_breakdown


class TestLanguageBreakdown:
    def test_projects_weighted_equally(self):
        result = language_breakdown([
            {"Python": 90.0, "Shell": 10.0},
            {"Go": 100.0},
        ])
        assert result["primaryLanguage"] == "Go"
        assert result["totalLanguages"] == 3
        assert result["projectsAnalyzed"] == 2
        assert result["languages"] == [
            {"language": "Go", "percentage": 50.0},
            {"language": "Python", "percentage": 45.0},
            {"language": "Shell", "percentage": 5.0},
        ]

    def test_ties_sorted_by_name(self):
        result = language_breakdown([{"Ruby": 50.0, "C": 50.0}])
        assert [l["language"] for l in result["languages"]] == ["C", "Ruby"]

    def test_rounded_to_one_decimal(self):
        result = language_breakdown([{"A": 1.0, "B": 1.0, "C": 1.0}])
        assert [l["percentage"] for l in result["languages"]] == [33.3, 33.3, 33.3]

    def test_no_projects(self):
        assert language_breakdown([]) == {
            "totalLanguages": 0,
            "primaryLanguage": None,
            "languages": [],
            "projectsAnalyzed": 0,
        }

    def test_projects_without_languages(self):
        result = language_breakdown([{}, {}])
        assert result["projectsAnalyzed"] == 2
        assert result["primaryLanguage"] is None
