"""Both CLI scripts resolve config and pack paths against the repo root."""
import importlib.util
from pathlib import Path

import pytest

REPO_ROOT = Path(__file__).resolve().parents[1]


def load_script(name):
    spec = importlib.util.spec_from_file_location(f"script_{name}", REPO_ROOT / "scripts" / f"{name}.py")
    module = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(module)
    return module


@pytest.fixture(params=["run_geodistrict", "build_tract_pack"])
def script(request):
    return load_script(request.param)


def test_config_path_ignores_cwd(script, tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    assert script._resolve_repo_root() == REPO_ROOT
    assert script._resolve_config_path("config.yaml") == REPO_ROOT / "config.yaml"


def test_relative_dirs_hang_off_repo_root(script, tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    root = script._resolve_repo_root()
    assert script._resolve_dir("assets/az_tracts", root) == REPO_ROOT / "assets" / "az_tracts"
    assert script._resolve_dir(str(tmp_path / "pack"), root) == tmp_path / "pack"
