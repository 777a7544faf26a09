"""Project-specific exception types."""

from __future__ import annotations


class ClaudeVMError(RuntimeError):
    """Base error for domain-level claude-vm failures."""


class TemplateNotFoundError(ClaudeVMError):
    def __init__(self, name: str):
        self.name = name
        super().__init__(
            f"Template not found: {name}. Run 'claude-vm setup' first."
        )


class LimaNotInstalledError(ClaudeVMError):
    def __init__(self):
        super().__init__('Lima not installed. Install from https://lima-vm.io')


class VMCommandError(ClaudeVMError):
    """Raised when a limactl invocation exits non-zero or fails to spawn."""

    def __init__(self, message: str, *, cmd=None, code: int | None = None):
        self.cmd = cmd
        self.code = code
        super().__init__(message)


class CommandExitCodeError(ClaudeVMError):
    """The command run inside the VM exited with a non-zero status."""

    def __init__(self, code: int):
        self.code = code
        super().__init__(f'Command exited with code {code}')


class ScriptNotFoundError(ClaudeVMError):
    pass


class GitError(ClaudeVMError):
    pass


class GitTimeoutError(GitError):
    pass


class InvalidConfigError(ClaudeVMError):
    pass


class InvalidEnvKeyError(InvalidConfigError):
    pass


class ProjectDetectionError(ClaudeVMError):
    pass


class PermissionDeniedError(ClaudeVMError):
    def __init__(self, what: str):
        super().__init__(f'Permission denied: {what}. Try running with sudo.')


class CommandNotFoundError(ClaudeVMError):
    pass


class CapabilityError(ClaudeVMError):
    pass


class UpdateError(ClaudeVMError):
    pass


class WorktreeError(ClaudeVMError):
    pass


class WorktreeNotFoundError(WorktreeError):
    def __init__(self, branch: str):
        self.branch = branch
        super().__init__(f"No worktree found for branch '{branch}'")


class WorktreeLockedError(WorktreeError):
    def __init__(self, reason: str, path: str):
        self.reason = reason
        self.path = path
        super().__init__(f'Worktree is locked ({reason}): {path}')


class BranchNotFoundError(WorktreeError):
    def __init__(self, branch: str):
        self.branch = branch
        super().__init__(f"Branch '{branch}' not found")


class WorktreePathTraversalError(WorktreeError):
    def __init__(self, path: str):
        self.path = path
        super().__init__(
            f'Worktree path escapes the worktree base directory: {path}'
        )


class GitVersionTooOldError(WorktreeError):
    def __init__(self, version: str):
        self.version = version
        super().__init__(
            f'Git version {version} is too old. Worktrees require Git 2.5+'
        )
