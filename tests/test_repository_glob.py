from registry_gc.utils import glob_to_regex, repo_name_matcher


def test_star_matches_across_segments():
    matches = repo_name_matcher("public/dotnet/*")
    assert matches("public/dotnet/runtime")
    assert matches("public/dotnet/nightly/sdk")
    assert not matches("public/dotnet")
    assert not matches("internal/public/dotnet/runtime")


def test_question_mark_matches_one_char():
    matches = repo_name_matcher("repo?")
    assert matches("repo1")
    assert not matches("repo")
    assert not matches("repo12")


def test_other_characters_are_literal():
    matches = repo_name_matcher("build.staging/[ab]+")
    assert matches("build.staging/[ab]+")
    assert not matches("buildxstaging/a")
    assert glob_to_regex("a.b").match("a.b")
    assert not glob_to_regex("a.b").match("axb")


def test_match_is_case_sensitive():
    assert not repo_name_matcher("Test/*")("test/repo")
