"""Tests for the catalog and the backtracking resolver."""

import pytest

from conftest import make_spec
from quarry.modules.errors import ConflictError, CycleError, NotFoundError, ResolutionError
from quarry.modules.resolver import Catalog, Resolver
from quarry.modules.spec import InstalledRecord


def resolver_for(*specs, db=None):
    return Resolver(Catalog(specs), db)


B_VERSIONS = [make_spec("B", v) for v in ("1.0.0", "1.5.0", "1.9.0", "2.0.0")]


class TestCatalog:
    """Candidate listing."""

    def test_candidates_highest_first(self):
        catalog = Catalog(B_VERSIONS)
        assert [str(s.version) for s in catalog.list_candidates("B")] == ["2.0.0", "1.9.0", "1.5.0", "1.0.0"]

    def test_call_filters_by_requirement(self):
        from quarry.modules.spec import VersionRequirement
        catalog = Catalog(B_VERSIONS)
        found = catalog("B", VersionRequirement("B", ">=1.5, <2.0"))
        assert [str(s.version) for s in found] == ["1.9.0", "1.5.0"]

    def test_unknown_name_has_no_candidates(self):
        assert Catalog(B_VERSIONS).list_candidates("nope") == []

    def test_reads_definitions_added_to_database(self, db):
        db.add_spec(make_spec("lib", "0.3.0"))
        catalog = Catalog(db=db)
        assert catalog.get_candidate("lib", "0.3.0") is not None
        assert catalog.names() == ["lib"]


class TestResolution:
    """Version selection."""

    def test_picks_highest_version_satisfying_all_requirements(self):
        a = make_spec("A", deps={"B": "≥1.0,<2.0"})
        c = make_spec("C", deps={"B": ">=1.5"})
        app = make_spec("app", deps={"A": "*", "C": "*"})
        graph = resolver_for(a, c, *B_VERSIONS).resolve(app)

        assert str(graph["B"].version) == "1.9.0"
        assert sorted(graph.names) == ["A", "B", "C", "app"]

    def test_backtracks_when_later_requirement_conflicts(self):
        # C is examined first and would choose B 2.0.0 on its own
        a = make_spec("A", deps={"B": ">=1.0,<2.0"})
        c = make_spec("C", deps={"B": ">=1.5"})
        app = make_spec("app", deps={"C": "*", "A": "*"})
        graph = resolver_for(a, c, *B_VERSIONS).resolve(app)

        assert str(graph["B"].version) == "1.9.0"

    def test_backtracks_to_older_dependent_version(self):
        new_lib = make_spec("lib", "2.0.0", deps={"zlib": ">=3.0"})
        old_lib = make_spec("lib", "1.0.0", deps={"zlib": ">=1.0"})
        zlib = make_spec("zlib", "1.2.0")
        app = make_spec("app", deps={"lib": "*"})
        graph = resolver_for(new_lib, old_lib, zlib).resolve(app)

        assert str(graph["lib"].version) == "1.0.0"
        assert str(graph["zlib"].version) == "1.2.0"

    def test_diamond_converges_to_single_node(self):
        left = make_spec("left", deps={"base": ">=1.0"})
        right = make_spec("right", deps={"base": "<1.4"})
        bases = [make_spec("base", v) for v in ("1.0.0", "1.3.0", "1.5.0")]
        app = make_spec("app", deps={"left": "*", "right": "*"})
        graph = resolver_for(left, right, *bases).resolve(app)

        assert len([n for n in graph if n.name == "base"]) == 1
        assert str(graph["base"].version) == "1.3.0"
        assert sorted(graph.dependents_of("base")) == ["left", "right"]

    def test_topological_order_puts_dependencies_first(self):
        a = make_spec("A", deps={"B": "*"})
        b = make_spec("B", deps={"C": "*"})
        c = make_spec("C")
        graph = resolver_for(b, c).resolve(a)
        order = graph.topological_order()

        assert order.index("C") < order.index("B") < order.index("A")

    def test_graph_renders_dot(self):
        graph = resolver_for(make_spec("B")).resolve(make_spec("A", deps={"B": "*"}))
        dot = graph.to_dot()
        assert '"A" -> "B";' in dot


class TestResolutionFailures:
    """Cycles, missing packages and unsatisfiable constraints."""

    def test_direct_cycle(self):
        a = make_spec("A", deps={"B": ">=2.0"})
        b = make_spec("B", "2.0.0", deps={"A": ">=1.0"})
        with pytest.raises(CycleError) as exc:
            resolver_for(a, b).resolve(a)
        assert exc.value.path == ["A", "B", "A"]

    def test_longer_cycle_is_detected(self):
        a = make_spec("A", deps={"B": "*"})
        b = make_spec("B", deps={"C": "*"})
        c = make_spec("C", deps={"D": "*"})
        d = make_spec("D", deps={"B": "*"})
        with pytest.raises(CycleError) as exc:
            resolver_for(a, b, c, d).resolve(a)
        assert exc.value.path == ["B", "C", "D", "B"]

    def test_cycle_is_a_resolution_error(self):
        a = make_spec("A", deps={"A": "*"})
        with pytest.raises(ResolutionError):
            resolver_for(a).resolve(a)

    def test_missing_package(self):
        with pytest.raises(NotFoundError) as exc:
            resolver_for().resolve(make_spec("app", deps={"ghost": "*"}))
        assert exc.value.name == "ghost"

    def test_no_version_in_range(self):
        with pytest.raises(NotFoundError):
            resolver_for(*B_VERSIONS).resolve(make_spec("app", deps={"B": ">=3.0"}))

    def test_unsatisfiable_diamond_reports_conflict(self):
        a = make_spec("A", deps={"B": "<2.0"})
        c = make_spec("C", deps={"B": ">=2.0"})
        app = make_spec("app", deps={"A": "*", "C": "*"})
        with pytest.raises(ConflictError) as exc:
            resolver_for(a, c, make_spec("B", "1.0.0"), make_spec("B", "2.0.0")).resolve(app)

        assert exc.value.name == "B"
        assert len(exc.value.requirements) == 2
        assert exc.value.decisions[0] == "app=1.0.0"


class TestInstalledPackages:
    """Interaction with the package database."""

    def record(self, name, version):
        return InstalledRecord(name=name, version=version, checksum="0" * 128, files=(), installed_at=1.0)

    def test_installed_version_is_reused_and_not_expanded(self, db):
        db.put("B", self.record("B", "1.5.0"))
        # the catalog's B would pull an unknown dependency if it were expanded
        b = make_spec("B", "1.5.0", deps={"unknown": "*"})
        app = make_spec("app", deps={"B": ">=1.0"})
        graph = resolver_for(b, make_spec("B", "1.9.0"), db=db).resolve(app)

        assert graph["B"].is_installed
        assert str(graph["B"].version) == "1.5.0"
        assert "unknown" not in graph

    def test_installed_version_outside_new_range_conflicts(self, db):
        db.put("B", self.record("B", "1.0.0"))
        app = make_spec("app", deps={"B": ">=2.0"})
        with pytest.raises(ConflictError) as exc:
            resolver_for(*B_VERSIONS, db=db).resolve(app)
        assert exc.value.name == "B"

    def test_installed_root_resolves_to_single_node(self, db):
        app = make_spec("app", deps={"B": "*"})
        db.put("app", self.record("app", "1.0.0"))
        graph = resolver_for(*B_VERSIONS, db=db).resolve(app)

        assert len(graph) == 1
        assert graph["app"].is_installed

    def test_installed_record_without_definition(self, db):
        db.put("B", self.record("B", "0.5.0"))
        graph = resolver_for(db=db).resolve(make_spec("app", deps={"B": "*"}))
        assert str(graph["B"].version) == "0.5.0"
