import typing
from collections import OrderedDict, defaultdict

from chainplan.errors import (
    CycleDetectedError,
    DuplicateStepError,
    InvalidPlanError,
    UnknownDependencyError,
)
from chainplan.models import Step, StepId, StepKind


class StepGraph:
    """
    A directed acyclic graph of steps.

    Dependencies are declared either as step ids or as artifact names. An artifact
    name resolves to the step that produces it; when an artifact is upgraded later
    in the plan, references declared after the upgrade resolve to the upgrade step.
    External artifact names are satisfied before the run starts.
    """

    def __init__(self, external: typing.Iterable[str] = ()):
        self.external = frozenset(external)
        self._steps: typing.Dict[StepId, Step] = OrderedDict()
        self._positions: typing.Dict[StepId, int] = dict()
        self._producers: typing.Dict[str, typing.List[StepId]] = defaultdict(list)
        self._edges: typing.Dict[StepId, typing.Set[StepId]] = dict()

    @classmethod
    def build(
        cls, steps: typing.Iterable[Step], external: typing.Iterable[str] = ()
    ) -> "StepGraph":
        """
        Builds a graph from a complete plan. Steps may reference steps declared later;
        unknown references and cycles are reported before anything runs.
        """
        graph = cls(external=external)
        for step in steps:
            graph._register(step)
        graph._validate_producers()
        for step_id, step in graph._steps.items():
            graph._edges[step_id] = graph._resolve_dependencies(step, allow_forward=True)
        graph._check_acyclic()
        return graph

    def add_step(self, step: Step) -> None:
        """Adds a step whose dependencies have all been added already."""
        self._register(step)
        try:
            self._validate_producers()
            self._edges[step.id] = self._resolve_dependencies(step, allow_forward=False)
        except Exception:
            self._unregister(step)
            raise

    def _register(self, step: Step) -> None:
        if step.id in self._steps:
            raise DuplicateStepError(step.id)
        self._positions[step.id] = len(self._steps)
        self._steps[step.id] = step
        if step.produces:
            self._producers[step.produces].append(step.id)

    def _unregister(self, step: Step) -> None:
        del self._steps[step.id]
        del self._positions[step.id]
        if step.produces:
            self._producers[step.produces].remove(step.id)
            if not self._producers[step.produces]:
                del self._producers[step.produces]

    def _validate_producers(self) -> None:
        """Only upgrades may produce an artifact that already exists."""
        for name, producers in self._producers.items():
            kinds = [self._steps[step_id].kind for step_id in producers]
            creators = [k for k in kinds if k is not StepKind.UPGRADE_PROXY]
            if name in self.external and creators:
                raise InvalidPlanError(
                    f"Artifact '{name}' is external but step '{producers[0]}' deploys it."
                )
            if len(creators) > 1:
                raise InvalidPlanError(f"Artifact '{name}' is produced by more than one step.")
            if creators and kinds[0] is StepKind.UPGRADE_PROXY:
                raise InvalidPlanError(
                    f"Artifact '{name}' is upgraded by '{producers[0]}' before it is deployed."
                )

    def _resolve_reference(
        self, step: Step, reference: str, allow_forward: bool
    ) -> typing.Optional[StepId]:
        """Maps a dependency to a step id, or None when it is satisfied externally."""
        if reference == step.id:
            raise CycleDetectedError([step.id])
        if reference in self._steps:
            if not allow_forward and self._positions[reference] > self._positions[step.id]:
                raise UnknownDependencyError(step.id, reference)
            return reference

        producers = [p for p in self._producers.get(reference, ()) if p != step.id]
        position = self._positions[step.id]
        earlier = [p for p in producers if self._positions[p] < position]
        if earlier:
            return earlier[-1]
        if reference in self.external:
            return None
        if producers and allow_forward:
            return producers[0]
        raise UnknownDependencyError(step.id, reference)

    def _resolve_dependencies(self, step: Step, allow_forward: bool) -> typing.Set[StepId]:
        dependencies = set()
        for reference in sorted(step.depends_on):
            step_id = self._resolve_reference(step, reference, allow_forward=allow_forward)
            if step_id is not None:
                dependencies.add(step_id)
        return dependencies

    def _check_acyclic(self) -> None:
        for _ in self.topological_order():
            pass

    def _find_cycle(self, candidates: typing.List[StepId]) -> typing.List[StepId]:
        """Returns the step ids of one cycle among steps that can never become ready."""
        remaining = set(candidates)
        visiting: typing.List[StepId] = list()
        visited: typing.Set[StepId] = set()

        def visit(step_id: StepId) -> typing.Optional[typing.List[StepId]]:
            if step_id in visiting:
                return visiting[visiting.index(step_id) :]
            if step_id in visited:
                return None
            visiting.append(step_id)
            for dependency in sorted(self._edges[step_id] & remaining, key=self._positions.get):
                cycle = visit(dependency)
                if cycle:
                    return cycle
            visiting.pop()
            visited.add(step_id)
            return None

        for step_id in candidates:
            cycle = visit(step_id)
            if cycle:
                return cycle
        return list(candidates)

    @property
    def steps(self) -> typing.List[Step]:
        """All steps in declaration order."""
        return list(self._steps.values())

    def __len__(self) -> int:
        return len(self._steps)

    def __iter__(self) -> typing.Iterator[Step]:
        return iter(self.steps)

    def __contains__(self, step_id: object) -> bool:
        return step_id in self._steps

    def get(self, step_id: StepId) -> Step:
        return self._steps[step_id]

    def dependencies_of(self, step_id: StepId) -> typing.Set[StepId]:
        return set(self._edges[step_id])

    def artifact_producers(self, step_id: StepId) -> typing.Dict[str, StepId]:
        """The step whose artifact each artifact reference of a step reads."""
        step = self._steps[step_id]
        producers = dict()
        for reference in step.depends_on:
            if reference in self._steps:
                continue
            producer = self._resolve_reference(step, reference, allow_forward=True)
            if producer is not None:
                producers[reference] = producer
        return producers

    def dependents_of(self, step_id: StepId) -> typing.List[Step]:
        """Transitive dependents of a step, in declaration order."""
        reverse = defaultdict(set)
        for dependent, dependencies in self._edges.items():
            for dependency in dependencies:
                reverse[dependency].add(dependent)

        found: typing.Set[StepId] = set()
        frontier = [step_id]
        while frontier:
            current = frontier.pop()
            for dependent in reverse[current]:
                if dependent not in found:
                    found.add(dependent)
                    frontier.append(dependent)
        return [step for step in self.steps if step.id in found]

    def topological_order(
        self, satisfied: typing.Iterable[StepId] = ()
    ) -> typing.Iterator[typing.List[Step]]:
        """
        Lazily yields ready batches assuming every step succeeds.
        Ties are broken by declaration order.
        """
        done = set(satisfied) & set(self._steps)
        remaining = [step_id for step_id in self._steps if step_id not in done]
        while remaining:
            batch = [step_id for step_id in remaining if self._edges[step_id] <= done]
            if not batch:
                raise CycleDetectedError(self._find_cycle(remaining))
            yield [self._steps[step_id] for step_id in batch]
            done.update(batch)
            remaining = [step_id for step_id in remaining if step_id not in done]

    def ready_batch(
        self, satisfied: typing.AbstractSet[StepId], settled: typing.AbstractSet[StepId]
    ) -> typing.List[Step]:
        """Steps that have not settled and whose dependencies are all satisfied."""
        return [
            step
            for step_id, step in self._steps.items()
            if step_id not in settled and self._edges[step_id] <= satisfied
        ]
