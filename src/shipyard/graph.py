"""Stage dependency graph with static validation.

Each stage names the stages it needs and the references it consumes and
produces (``source:tree``, ``build:target/release/server``, ``artifact:server``).
Validation rejects a graph where a consumed reference is not produced by an
upstream stage, so a copy step can never silently depend on a file that an
earlier step might not have written.
"""

from __future__ import annotations

from dataclasses import dataclass

from shipyard.definition import PipelineDefinition
from shipyard.errors import ValidationError
from shipyard.models import StageKind


@dataclass(frozen=True, slots=True)
class StageNode:
    name: str
    kind: StageKind
    needs: tuple[str, ...] = ()
    consumes: tuple[str, ...] = ()
    produces: tuple[str, ...] = ()


@dataclass(frozen=True, slots=True)
class StageGraph:
    nodes: tuple[StageNode, ...]

    def node(self, name: str) -> StageNode:
        for node in self.nodes:
            if node.name == name:
                return node
        raise ValidationError("Unknown stage.", context={"stage": name})

    def validate(self) -> None:
        names = [node.name for node in self.nodes]
        duplicates = sorted({name for name in names if names.count(name) > 1})
        if duplicates:
            raise ValidationError(
                "Stage names must be unique.",
                hint="Rename the build or runtime stage.",
                context={"stages": ",".join(duplicates)},
            )
        known = set(names)
        for node in self.nodes:
            missing = [need for need in node.needs if need not in known]
            if missing:
                raise ValidationError(
                    "Stage depends on an undeclared stage.",
                    context={"stage": node.name, "missing": ",".join(missing)},
                )

        order = self.order()
        for node in self.nodes:
            available: set[str] = set()
            for ancestor in self._ancestors(node.name):
                available.update(self.node(ancestor).produces)
            unresolved = [ref for ref in node.consumes if ref not in available]
            if unresolved:
                raise ValidationError(
                    "Stage consumes outputs no upstream stage produces.",
                    hint="Declare the producing stage as a dependency.",
                    context={
                        "stage": node.name,
                        "unresolved": ",".join(unresolved),
                        "order": ",".join(order),
                    },
                )

    def order(self) -> tuple[str, ...]:
        """Topological order; ties keep declaration order."""
        remaining = {node.name: set(node.needs) for node in self.nodes}
        ordered: list[str] = []
        while remaining:
            ready = [node.name for node in self.nodes if remaining.get(node.name) == set()]
            if not ready:
                raise ValidationError(
                    "Stage graph contains a cycle.",
                    context={"stages": ",".join(sorted(remaining))},
                )
            name = ready[0]
            ordered.append(name)
            del remaining[name]
            for needs in remaining.values():
                needs.discard(name)
        return tuple(ordered)

    def _ancestors(self, name: str) -> set[str]:
        seen: set[str] = set()
        pending = list(self.node(name).needs)
        while pending:
            current = pending.pop()
            if current in seen:
                continue
            seen.add(current)
            pending.extend(self.node(current).needs)
        return seen


def stage_graph_for(definition: PipelineDefinition) -> StageGraph:
    build_ref = f"build:{definition.artifact_relpath()}"
    artifact_ref = f"artifact:{definition.build.binary}"
    dataset_refs = tuple(f"source:{dataset.source}" for dataset in definition.runtime.datasets)
    return StageGraph(
        nodes=(
            StageNode(
                name="source",
                kind="source",
                produces=("source:tree", *dataset_refs),
            ),
            StageNode(
                name=definition.build.stage,
                kind="build",
                needs=("source",),
                consumes=("source:tree",),
                produces=(build_ref,),
            ),
            StageNode(
                name="extract",
                kind="extract",
                needs=(definition.build.stage,),
                consumes=(build_ref,),
                produces=(artifact_ref,),
            ),
            StageNode(
                name=definition.runtime.stage,
                kind="runtime",
                needs=("extract",),
                consumes=(artifact_ref, *dataset_refs),
                produces=(f"image:{definition.name}",),
            ),
        ),
    )
