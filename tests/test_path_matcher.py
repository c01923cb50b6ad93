import pytest

from mediamirror.sync import path_matcher


class TestScore:
    def test_same_file_different_mounts(self):
        a = "/data/media/movies/Avatar (2009)/Avatar.2009.1080p.mkv"
        b = "/jellyfin/movies/Avatar (2009)/Avatar.2009.1080p.mkv"
        assert path_matcher.score(a, b) == 3

    def test_filename_and_parent_only(self):
        a = "/mnt/a/Avatar (2009)/Avatar.mkv"
        b = "/srv/b/Avatar (2009)/Avatar.mkv"
        assert path_matcher.score(a, b) == 2

    def test_filename_only(self):
        a = "/movies/Avatar (2009)/Avatar.1080p.mkv"
        b = "/movies/Titanic (1997)/Avatar.1080p.mkv"
        assert path_matcher.score(a, b) == 1

    def test_different_filenames(self):
        assert path_matcher.score("/movies/a.mkv", "/movies/b.mkv") == 0

    def test_windows_separators_and_case(self):
        a = r"D:\Media\Movies\Avatar (2009)\Avatar.mkv"
        b = "/media/movies/avatar (2009)/AVATAR.mkv"
        assert path_matcher.score(a, b) == 4

    @pytest.mark.parametrize("a,b", [
        (None, "/movies/a.mkv"),
        ("/movies/a.mkv", None),
        ("", "/movies/a.mkv"),
        (None, None),
    ])
    def test_missing_input_scores_zero(self, a, b):
        assert path_matcher.score(a, b) == 0
        assert path_matcher.is_match(a, b) is False

    def test_symmetric(self):
        a = "/data/tv/Show/Season 01/S01E01.mkv"
        b = "/tv/Show/Season 01/S01E01.mkv"
        assert path_matcher.score(a, b) == path_matcher.score(b, a) == 4


class TestIsMatch:
    def test_parent_and_filename_match(self):
        assert path_matcher.is_match(
            "/data/media/movies/Avatar (2009)/Avatar.2009.1080p.mkv",
            "/jellyfin/movies/Avatar (2009)/Avatar.2009.1080p.mkv",
        )

    def test_different_parent_is_not_a_match(self):
        assert not path_matcher.is_match(
            "/movies/Avatar (2009)/Avatar.1080p.mkv",
            "/movies/Titanic (1997)/Avatar.1080p.mkv",
        )

    def test_custom_threshold(self):
        a = "/x/Avatar (2009)/Avatar.mkv"
        b = "/y/Avatar (2009)/Avatar.mkv"
        assert not path_matcher.is_match(a, b, min_segments=3)
