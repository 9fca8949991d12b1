from typing import Any, Generic, Protocol, TypeVar

# Base registry implementation
T = TypeVar("T")


class Registry(Generic[T]):
    """Generic registry for pluggable implementations."""

    def __init__(self, name: str):
        self.name = name
        self._implementations: dict[str, T] = {}
        self._frozen = False

    def register(self, name: str, implementation: T) -> None:
        """Register an implementation with a given name."""
        if self._frozen:
            raise RuntimeError(
                f"Cannot register '{name}' in {self.name.lower()} registry: "
                "registry is frozen in production mode"
            )
        self._implementations[name] = implementation

    def get(self, name: str) -> T:
        """Get an implementation by name."""
        if name not in self._implementations:
            raise KeyError(
                f"No {self.name.lower()} implementation registered with name: {name}"
            )
        return self._implementations[name]

    def values(self) -> list[T]:
        """List all registered implementations in registration order."""
        return list(self._implementations.values())

    # Defined after values so the annotations above still see the builtin
    def list(self) -> list[str]:
        """List all registered implementation names."""
        return [name for name in self._implementations]

    def freeze(self) -> None:
        """Freeze the registry to prevent further modifications."""
        self._frozen = True

    def is_frozen(self) -> bool:
        """Check if the registry is frozen."""
        return self._frozen


# Subject Registry - one variant per subject kind a job can reference
class SubjectVariant(Protocol):
    """Protocol for subject kinds (content_type, content_idea, webhook)."""

    kind: Any  # SubjectKind
    job_column: str

    def validate_payload(self, payload: dict[str, Any]) -> dict[str, Any]:
        """Validate and normalize the payload snapshot for this subject kind."""
        ...

    def endpoint_id(self, subject_id: str) -> str:
        """Identify the execution target whose health this job feeds."""
        ...

    async def mark_terminal(
        self,
        session: Any,  # AsyncSession
        subject_id: str,
        status: str,
        error: str | None = None,
    ) -> bool:
        """Annotate the owning subject record with a terminal job outcome."""
        ...


class SubjectRegistry(Registry[SubjectVariant]):
    """Registry for subject variants."""

    def __init__(self):
        super().__init__("Subject")


# Executor Registry - external executors invoked by the dispatcher
class JobExecutor(Protocol):
    """Protocol for executors that perform the remote side of a job."""

    async def execute(self, job: Any) -> Any:
        """
        Execute one attempt of a job.

        Args:
            job: The claimed JobRecord

        Returns:
            ExecutionResult with the executor's data and timing

        Raises:
            ExecutorError subclasses for retryable failures
        """
        ...


class ExecutorRegistry(Registry[JobExecutor]):
    """Registry for job executors keyed by subject kind."""

    def __init__(self):
        super().__init__("Executor")


# Global registry instances (singletons)
subject_registry = SubjectRegistry()
executor_registry = ExecutorRegistry()
