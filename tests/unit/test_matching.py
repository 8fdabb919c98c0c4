"""Tests for commit author attribution."""
from types import SimpleNamespace

from codetrack.gitlab.matching import is_own_commit


def _integration(username="alice", email="alice@example.com"):
    return SimpleNamespace(gitlab_username=username, gitlab_email=email)


def _commit(**fields):
    base = {
        "author_name": "Someone Else",
        "author_email": "someone@example.com",
        "committer_name": "Someone Else",
        "committer_email": "someone@example.com",
    }
    base.update(fields)
    return base


class TestIsOwnCommit:
    def test_author_email_match(self):
        assert is_own_commit(_commit(author_email="alice@example.com"), _integration())

    def test_email_match_is_case_insensitive(self):
        assert is_own_commit(_commit(author_email="Alice@Example.COM"), _integration())

    def test_committer_email_match(self):
        assert is_own_commit(_commit(committer_email="alice@example.com"), _integration())

    def test_author_name_equals_username(self):
        assert is_own_commit(_commit(author_name="ALICE"), _integration(email=None))

    def test_username_inside_author_name(self):
        assert is_own_commit(_commit(author_name="alice.smith"), _integration(email=None))

    def test_username_inside_committer_name(self):
        assert is_own_commit(_commit(committer_name="Bot for alice"), _integration(email=None))

    def test_substring_over_matches_short_username(self):
        """Short usernames match longer names that contain them."""
        assert is_own_commit(_commit(author_name="Alice"), _integration(username="al", email=None))

    def test_unrelated_commit(self):
        assert not is_own_commit(_commit(), _integration())

    def test_missing_author_fields(self):
        assert not is_own_commit({}, _integration())

    def test_no_username_no_email(self):
        assert not is_own_commit(_commit(author_name=""), _integration(username="", email=None))

    def test_empty_email_does_not_match_empty_author_email(self):
        commit = _commit(author_email="", committer_email="")
        assert not is_own_commit(commit, _integration(email=""))
