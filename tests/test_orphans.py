import argparse
import json
from unittest.mock import MagicMock

import pytest

from talos_gcp.compiler import compile_desired_state
from talos_gcp.errors import ConfigurationError
from talos_gcp.modes.orphans import NOT_DESIRED, UNTRACKED, OrphanHunter, run_orphans
from talos_gcp.schemas.base import ResourceKind
from talos_gcp.schemas.iam import ServiceAccountSpec


def orphan_args(tmp_path, **overrides):
    values = {
        "action": "list",
        "all": False,
        "cluster": None,
        "clusters_dir": str(tmp_path / "clusters"),
        "project_id": None,
        "json": False,
        "csv": None,
        "yes": True,
    }
    values.update(overrides)
    return argparse.Namespace(**values)


def test_excess_workers_are_orphans(provider, make_config):
    provider.seed(*compile_desired_state(make_config(WORKER_COUNT=3)))
    hunter = OrphanHunter(provider, {"a": make_config(WORKER_COUNT=1)})

    orphans = hunter.hunt("a")

    assert [(o.kind, o.name, o.reason) for o in orphans] == [
        ("Instance", "a-worker-1", NOT_DESIRED),
        ("Instance", "a-worker-2", NOT_DESIRED),
    ]


def test_repeated_hunts_do_not_accumulate(provider, make_config):
    provider.seed(*compile_desired_state(make_config(WORKER_COUNT=2)))
    hunter = OrphanHunter(provider, {"a": make_config(WORKER_COUNT=1)})

    hunter.hunt("a")
    orphans = hunter.hunt("a")

    assert [o.name for o in orphans] == ["a-worker-1"]
    assert [s.name for s in hunter.found["a"]] == ["a-worker-1"]


def test_untracked_cluster_is_reported_whole(provider, make_config):
    provider.seed(*compile_desired_state(make_config()))
    provider.seed(*compile_desired_state(make_config(CLUSTER_NAME="b")))
    hunter = OrphanHunter(provider, {"a": make_config()})

    orphans = hunter.hunt()

    assert {o.cluster for o in orphans} == {"b"}
    assert all(o.reason == UNTRACKED for o in orphans)
    b_names = {name for (_, name) in provider.resources if name.startswith("b-")}
    assert {o.name for o in orphans} >= b_names
    # Orphans are listed in dependency order
    assert orphans[0].kind == "Network"


def test_unlabeled_resources_are_ignored(provider):
    provider.seed(ServiceAccountSpec(name="default-sa", project_id="test-project"))

    assert OrphanHunter(provider, {}).hunt() == []


def test_clean_deletes_exactly_the_residual(provider, make_config):
    provider.seed(*compile_desired_state(make_config(WORKER_COUNT=3)))
    before = set(provider.resources)
    hunter = OrphanHunter(provider, {"a": make_config(WORKER_COUNT=1)})
    hunter.hunt("a")

    (report,) = hunter.clean()

    assert report.converged
    assert provider.ops("delete") == ["a-worker-2", "a-worker-1"]
    assert before - set(provider.resources) == {
        (ResourceKind.INSTANCE, "a-worker-1"),
        (ResourceKind.INSTANCE, "a-worker-2"),
    }


def test_uncompilable_config_is_skipped(provider, make_config):
    provider.seed(*compile_desired_state(make_config()))
    broken = make_config(CP_COUNT=0)

    assert OrphanHunter(provider, {"a": broken}).hunt("a") == []


def test_run_orphans_needs_a_project(tmp_path):
    with pytest.raises(ConfigurationError, match="--project-id"):
        run_orphans(orphan_args(tmp_path), None, MagicMock(), MagicMock())


def test_run_orphans_unconfigured_reports_everything(provider, make_config, tmp_path, capsys):
    provider.seed(*compile_desired_state(make_config()))
    args = orphan_args(tmp_path, project_id="test-project", json=True)

    assert run_orphans(args, None, MagicMock(), MagicMock(), provider=provider) == 0

    records = json.loads(capsys.readouterr().out)
    assert len(records) == len(provider.resources)
    assert {r["reason"] for r in records} == {UNTRACKED}
    assert provider.ops("delete") == []


def test_run_orphans_all_uses_known_configs(provider, make_config, tmp_path, capsys):
    clusters = tmp_path / "clusters"
    clusters.mkdir()
    (clusters / "b.env").write_text('PROJECT_ID="test-project"\nCLUSTER_NAME="b"\n')
    provider.seed(*compile_desired_state(make_config()))
    provider.seed(*compile_desired_state(make_config(CLUSTER_NAME="b")))
    provider.seed(*compile_desired_state(make_config(CLUSTER_NAME="c")))
    args = orphan_args(tmp_path, all=True, json=True)

    run_orphans(args, make_config(), MagicMock(), MagicMock(), provider=provider)

    records = json.loads(capsys.readouterr().out)
    assert {r["cluster"] for r in records} == {"c"}


def test_run_orphans_writes_csv(provider, make_config, tmp_path):
    provider.seed(*compile_desired_state(make_config(WORKER_COUNT=2)))
    out = tmp_path / "orphans.csv"
    args = orphan_args(tmp_path, csv=str(out))

    run_orphans(args, make_config(WORKER_COUNT=1), MagicMock(), MagicMock(), provider=provider)

    lines = out.read_text().splitlines()
    assert lines[0] == "kind,name,cluster,reason"
    assert lines[1].startswith("Instance,a-worker-1,a,")


def test_run_orphans_clean(provider, make_config, tmp_path):
    provider.seed(*compile_desired_state(make_config(WORKER_COUNT=2)))
    args = orphan_args(tmp_path, action="clean")

    code = run_orphans(args, make_config(WORKER_COUNT=1), MagicMock(), MagicMock(), provider=provider)

    assert code == 0
    assert provider.ops("delete") == ["a-worker-1"]
