"""Tests for configuration loading."""

from config import AppConfig, get_gemini_keys_from_env, normalize_keys, split_keys


class TestSystemKeys:
    """Tests for reading server keys from the environment."""

    def test_comma_separated_value(self):
        assert get_gemini_keys_from_env({"GEMINI_API_KEY": "a, b ,,c"}) == ["a", "b", "c"]

    def test_all_sources_merged_in_order(self):
        environ = {
            "API_KEY": "k3",
            "GOOGLE_API_KEY": "k2",
            "GEMINI_API_KEY": "k1",
            "GEMINI_API_KEY_2": "n2",
            "GEMINI_API_KEY_1": "n1",
        }
        assert get_gemini_keys_from_env(environ) == ["k1", "k2", "k3", "n1", "n2"]

    def test_duplicates_across_variables_dropped(self):
        environ = {"GEMINI_API_KEY": "same", "GEMINI_API_KEY_1": "same,other"}
        assert get_gemini_keys_from_env(environ) == ["same", "other"]

    def test_placeholder_values_ignored(self):
        assert get_gemini_keys_from_env({"GEMINI_API_KEY": "your-gemini-api-key"}) == []

    def test_no_keys(self):
        assert get_gemini_keys_from_env({"PATH": "/usr/bin"}) == []

    def test_keys_not_printed(self, capsys):
        get_gemini_keys_from_env({"GEMINI_API_KEY": "AIzaSySECRETVALUE"})
        assert "SECRETVALUE" not in capsys.readouterr().out


class TestHelpers:
    def test_split_keys_empty(self):
        assert split_keys(None) == []
        assert split_keys("") == []

    def test_normalize_keys(self):
        assert normalize_keys([" a", "", None, "a ", "b"]) == ["a", "b"]


class TestAppConfig:
    def test_validate_flags_bad_values(self):
        config = AppConfig(image_max_attempts=0, video_timeout=0)
        errors = config.validate()
        assert any("IMAGE_MAX_ATTEMPTS" in e for e in errors)
        assert any("VIDEO_TIMEOUT_SEC" in e for e in errors)

    def test_database_url_defaults_to_data_dir(self, tmp_path, monkeypatch):
        monkeypatch.delenv("DATABASE_URL", raising=False)
        config = AppConfig(data_dir=tmp_path)
        assert config.database_url == f"sqlite:///{tmp_path / 'studio.db'}"
