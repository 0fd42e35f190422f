"""Exception types shared by the worker, services and connectors."""

from __future__ import annotations


class PermanentJobError(Exception):
    """A job failure that retrying cannot fix (missing config, bad credentials)."""


class CredentialsNotFoundError(PermanentJobError):
    def __init__(self, project_id: str):
        self.project_id = project_id
        super().__init__(f"No credentials for project {project_id} and no system default configured")


class AccessTokenUnavailableError(PermanentJobError):
    def __init__(self, project_id: str):
        self.project_id = project_id
        super().__init__(
            f"No repository access for project {project_id}: "
            "no app installation and GITHUB_TOKEN is not set"
        )


class RepositoryDetectionError(PermanentJobError):
    pass


class JobConfigurationError(PermanentJobError):
    """The job row or its related records are missing something the job type needs."""


class GitHubAPIError(Exception):
    def __init__(self, status_code: int | None, message: str):
        self.status_code = status_code
        prefix = f"HTTP {status_code}: " if status_code is not None else ""
        super().__init__(f"GitHub API error: {prefix}{message}")


class StrategyError(Exception):
    def __init__(self, strategy: str, message: str):
        self.strategy = strategy
        super().__init__(f"{strategy} strategy failed: {message}")
