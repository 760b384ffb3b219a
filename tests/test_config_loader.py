"""
Unit tests for configuration loading and suite access control
"""
import pytest
import yaml

from gradepipe.config_loader import load_config
from gradepipe.errors import ConfigError, SuiteAccessError
from gradepipe.models import SuiteVisibility, TestSuiteSpec
from gradepipe.suites import AccessRole, SuiteRegistry

CONFIG = {
    "submissions": [
        {"submission_id": "s1", "student_id": "alice", "repository": "repos/alice", "reference": "main"},
        {"submission_id": "s2", "student_id": "bob", "repository": "https://github.com/org/bob.git"},
    ],
    "visible_store": "suites/visible",
    "hidden_store": "/srv/grader/hidden",
    "grades_dir": "out",
    "suites": [
        {"name": "basic", "visibility": "visible", "path": "basic", "tests": ["test_api.py::test_create"]},
        {"name": "secret", "visibility": "hidden", "path": "secret", "tests": ["test_secret.py"],
         "timeout_seconds": 30},
    ],
    "rubric": {"visible_weight": 0.3, "hidden_weight": 0.7},
    "sandbox": {"timeout_seconds": 45, "sandbox_root": "scratch"},
}


def write_config(tmp_path, data):
    path = tmp_path / "grader_config.yml"
    path.write_text(yaml.safe_dump(data), encoding="utf-8")
    return path


class TestLoadConfig:
    def test_paths_resolve_relative_to_config(self, tmp_path):
        config = load_config(write_config(tmp_path, CONFIG))

        assert config.visible_store == tmp_path / "suites" / "visible"
        assert str(config.hidden_store) == "/srv/grader/hidden"
        assert config.grades_dir == tmp_path / "out"
        assert config.sandbox.sandbox_root == tmp_path / "scratch"
        assert config.submissions[0].repository == str(tmp_path / "repos" / "alice")
        assert config.submissions[1].repository == "https://github.com/org/bob.git"
        assert config.submissions[1].reference == "HEAD"

    def test_defaults_and_overrides(self, tmp_path):
        config = load_config(write_config(tmp_path, CONFIG))

        assert config.rubric.visible_weight == 0.3
        assert config.rubric.manual_review_flag_threshold == 0.8
        assert config.sandbox.timeout_seconds == 45
        assert config.sandbox.backend == "local"
        assert config.similarity.shingle_size == 5
        assert config.workers == 2

    def test_missing_file(self, tmp_path):
        with pytest.raises(ConfigError):
            load_config(tmp_path / "nope.yml")

    def test_empty_file(self, tmp_path):
        path = tmp_path / "empty.yml"
        path.write_text("", encoding="utf-8")
        with pytest.raises(ConfigError):
            load_config(path)

    def test_invalid_rubric(self, tmp_path):
        data = {**CONFIG, "rubric": {"visible_weight": 0, "hidden_weight": 0}}
        with pytest.raises(ConfigError):
            load_config(write_config(tmp_path, data))

    def test_invalid_yaml(self, tmp_path):
        path = tmp_path / "bad.yml"
        path.write_text("suites: [unclosed", encoding="utf-8")
        with pytest.raises(ConfigError):
            load_config(path)

    @pytest.mark.parametrize("tests", [[], ["test_api.py::test_create", "test_api.py::test_create"]])
    def test_invalid_suite_tests(self, tmp_path, tests):
        suite = {"name": "basic", "visibility": "visible", "path": "basic", "tests": tests}
        with pytest.raises(ConfigError):
            load_config(write_config(tmp_path, {**CONFIG, "suites": [suite]}))

    def test_sandbox_isolation_settings(self, tmp_path):
        data = {**CONFIG, "sandbox": {"command_prefix": ["bwrap", "--bind", "{scratch}", "{scratch}"]}}
        config = load_config(write_config(tmp_path, data))

        assert config.sandbox.command_prefix[2] == "{scratch}"
        assert config.sandbox.allow_unisolated is False
        assert config.sandbox.image == "gradepipe-sandbox:latest"


class TestSuiteRegistry:
    def test_from_config_places_suites_in_their_store(self, tmp_path):
        config = load_config(write_config(tmp_path, CONFIG))
        registry = SuiteRegistry.from_config(config.suites, config.visible_store, config.hidden_store)

        visible = registry.suites_for(AccessRole.GRADER, SuiteVisibility.VISIBLE)
        hidden = registry.suites_for(AccessRole.GRADER, SuiteVisibility.HIDDEN)
        assert visible[0].path == tmp_path / "suites" / "visible" / "basic"
        assert str(hidden[0].path) == "/srv/grader/hidden/secret"
        assert hidden[0].timeout_seconds == 30

    def test_students_only_see_visible_suites(self, suite_specs, stores):
        registry = SuiteRegistry(suite_specs, *stores)
        assert [s.name for s in registry.suites_for(AccessRole.STUDENT)] == ["basic"]
        with pytest.raises(SuiteAccessError):
            registry.suites_for(AccessRole.STUDENT, SuiteVisibility.HIDDEN)
        assert [s.name for s in registry.suites_for(AccessRole.GRADER)] == ["basic", "secret"]

    def test_hidden_suite_outside_hidden_store_rejected(self, stores):
        visible, hidden = stores
        misplaced = TestSuiteSpec(name="leak", visibility=SuiteVisibility.HIDDEN,
                                  path=visible / "leak", tests=["test_x.py"])
        with pytest.raises(SuiteAccessError):
            SuiteRegistry([misplaced], visible, hidden)

    def test_overlapping_stores_rejected(self, tmp_path):
        with pytest.raises(SuiteAccessError):
            SuiteRegistry([], tmp_path / "suites", tmp_path / "suites" / "hidden")

    def test_duplicate_names_rejected(self, suite_specs, stores):
        with pytest.raises(SuiteAccessError):
            SuiteRegistry([suite_specs[0], suite_specs[0]], *stores)

    def test_workspace_root_must_not_overlap_hidden_store(self, suite_specs, stores):
        visible, hidden = stores
        registry = SuiteRegistry(suite_specs, visible, hidden)
        with pytest.raises(SuiteAccessError):
            registry.ensure_isolated(hidden / "workspaces")
        with pytest.raises(SuiteAccessError):
            registry.ensure_isolated(hidden.parent)
        registry.ensure_isolated(hidden.parent.parent / "workspaces")
