"""
Phase execution on the host and in the VM, plus the session entrypoint.

A phase is an ordered list of scripts sharing an environment and an
optional ``when`` guard. Setup and teardown phases are copied into the VM
and run one script at a time. Runtime phases are folded into a single
bash entrypoint that ends with ``exec "$@"`` so the final command replaces
the shell and receives its arguments as positional parameters.
"""

from __future__ import annotations

import os
import tempfile
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Iterable, Optional, Sequence

from loguru import logger

from . import __version__
from .config import Config, HostPhaseConfig, ScriptPhase
from .errors import (
    CommandExitCodeError,
    ScriptNotFoundError,
    VMCommandError,
)
from .project import Project
from .shell import build_env_export, sanitize_filename, shell_escape
from .util import CmdError, run_cmd

log = logger

RUNTIME_HOOK_DIR = '/usr/local/share/claude-vm/runtime'
AGENT_DEPLOY_SCRIPT = '/usr/local/share/claude-vm/agent-deploy.sh'
BASE_CONTEXT_PATH = '/tmp/claude-vm-base-context.md'
PROJECT_RUNTIME_SCRIPT = '.claude-vm.runtime.sh'

# Where agent installers and npm put user binaries.
SESSION_PATH_EXPORT = 'export PATH="$HOME/.local/bin:$HOME/.npm-global/bin:$PATH"'

CONTEXT_START = '<!-- claude-vm-context-start -->'
CONTEXT_RUNTIME_PLACEHOLDER = '<!-- claude-vm-context-runtime-placeholder -->'
CONTEXT_END = '<!-- claude-vm-context-end -->'


@dataclass(frozen=True)
class PhaseContext:
    """Where a phase runs: the project and the VM instance name."""

    project: Project
    vm_name: str

    def capability_env(self, phase: ScriptPhase, include_instance: bool = True) -> dict[str, str]:
        project = self.project
        env = {'TEMPLATE_NAME': project.template_name}
        if include_instance:
            env['LIMA_INSTANCE'] = self.vm_name
        env.update({
            'CAPABILITY_ID': phase.capability_id or '',
            'CLAUDE_VM_PHASE': phase.env.get('CLAUDE_VM_PHASE', ''),
            'CLAUDE_VM_VERSION': __version__,
            'PROJECT_ROOT': str(project.root),
            'PROJECT_NAME': project.name,
            'PROJECT_WORKTREE_ROOT': str(project.main_repo_root) if project.is_worktree else '',
            'PROJECT_WORKTREE': str(project.root) if project.is_worktree else '',
        })
        return env

    def phase_env(self, phase: ScriptPhase, include_instance: bool = True) -> dict[str, str]:
        env = {}
        if phase.capability_id:
            env.update(self.capability_env(phase, include_instance=include_instance))
        env.update(phase.env)
        return env


def env_prelude(env: dict[str, str]) -> str:
    """
    Example:
        >>> from claude_vm.phases import env_prelude
        >>> print(env_prelude({'GREETING': "it's ok"}))
        export GREETING='it'\\''s ok'
        <BLANKLINE>
    """
    lines = [build_env_export(k, v) for k, v in env.items()]
    return '\n'.join(lines) + '\n' if lines else ''


def with_prelude(env: dict[str, str], content: str) -> str:
    prelude = env_prelude(env)
    if not prelude:
        return content
    return prelude + '\n' + content


def _preview(content: str, n: int = 3) -> list[str]:
    lines = [ln for ln in content.splitlines() if ln.strip()]
    out = lines[:n]
    if len(lines) > n:
        out.append('...')
    return out


def report_failure(context: str, phase: ScriptPhase, script_name: str, content: str, err: Exception) -> None:
    print(f"\n❌ {context} phase '{phase.name}' failed")
    print(f'   Script: {script_name}')
    if script_name.endswith('-inline'):
        for line in _preview(content):
            print(f'     {line}')
    print(f'   Error: {err}')
    if phase.when:
        print(f'   Condition: {phase.when}')
    if phase.continue_on_error:
        print('   ℹ Continuing due to continue_on_error=true')
    log.debug('{} phase {} failed: {}', context, phase.name, err)


def copy_text(lima, vm_name: str, content: str, dest: str) -> None:
    """Write ``content`` to a host temp file and ``limactl copy`` it to ``dest``."""
    fd, tmp = tempfile.mkstemp(prefix='claude-vm-', suffix='.tmp')
    try:
        with os.fdopen(fd, 'w', encoding='utf-8') as file:
            file.write(content)
        lima.copy(tmp, vm_name, dest)
    finally:
        os.unlink(tmp)


def execute_script(lima, vm_name: str, content: str, name: str) -> None:
    """Copy ``content`` into the VM as ``/tmp/<name>`` and run it with bash."""
    fname = sanitize_filename(name) or 'claude-vm-script.sh'
    dest = f'/tmp/{fname}'
    copy_text(lima, vm_name, content, dest)
    lima.shell(vm_name, 'chmod', ['+x', dest])
    try:
        lima.shell(vm_name, 'bash', [dest])
    except CommandExitCodeError as ex:
        raise VMCommandError(
            f"Script '{name}' failed with exit code {ex.code}",
            cmd=['bash', dest],
            code=ex.code,
        )


def vm_condition_met(lima, vm_name: str, when: str) -> bool:
    if not when:
        return True
    return lima.shell(vm_name, 'bash', ['-c', when], check=False) == 0


def host_condition_met(when: str, env: Optional[dict[str, str]] = None, cwd=None) -> bool:
    if not when:
        return True
    try:
        res = run_cmd(['bash', '-c', when], check=False, capture=True, env=env, cwd=cwd)
    except FileNotFoundError:
        return False
    return res.code == 0


def _load_scripts(phase: ScriptPhase, project_root, context: str) -> Optional[list[tuple[str, str]]]:
    """Scripts of ``phase``, or None when loading failed but may be skipped."""
    try:
        return phase.get_scripts(project_root)
    except ScriptNotFoundError as ex:
        if not phase.continue_on_error:
            raise
        report_failure(context, phase, phase.name, '', ex)
        return None


def run_vm_phases(
    lima,
    ctx: PhaseContext,
    phases: Sequence[ScriptPhase],
    context: str = 'Setup',
) -> None:
    """Run VM phases in order; failures propagate unless ``continue_on_error``."""
    for phase in phases:
        phase.validate(context)
        if not vm_condition_met(lima, ctx.vm_name, phase.when):
            print(f"⊘ Skipping {context.lower()} phase '{phase.name}' (condition not met)")
            continue
        scripts = _load_scripts(phase, ctx.project.root, context)
        if scripts is None:
            continue
        env = ctx.phase_env(phase)
        log.info('Running {} phase {} ({} script(s))', context.lower(), phase.name, len(scripts))
        for script_name, content in scripts:
            full = with_prelude(env, content)
            try:
                execute_script(lima, ctx.vm_name, full, f'{phase.name}-{script_name}')
            except VMCommandError as ex:
                report_failure(context, phase, script_name, content, ex)
                if not phase.continue_on_error:
                    raise


def run_host_phases(
    ctx: PhaseContext,
    phases: Sequence[ScriptPhase],
    phase_type: str,
) -> None:
    """Run host phases with the VM identity exported into their environment."""
    for phase in phases:
        phase.validate('Host')
        print(f'\n━━━ Host Phase: {phase.name} ━━━')
        env = dict(os.environ)
        env.update({
            'VM_NAME': ctx.vm_name,
            'LIMA_INSTANCE': ctx.vm_name,
            'PROJECT_ROOT': str(ctx.project.root),
            'TEMPLATE_NAME': ctx.project.template_name,
            'PHASE_TYPE': phase_type,
        })
        env.update(ctx.phase_env(phase))
        if not host_condition_met(phase.when, env=env, cwd=ctx.project.root):
            print('⊘ Skipped (condition not met)')
            continue
        scripts = _load_scripts(phase, ctx.project.root, 'Host')
        if scripts is None:
            continue
        failed = False
        for script_name, content in scripts:
            try:
                run_cmd(['bash', '-c', content], check=True, capture=False, env=env, cwd=ctx.project.root)
            except (CmdError, FileNotFoundError) as ex:
                report_failure('Host', phase, script_name, content, ex)
                if not phase.continue_on_error:
                    raise VMCommandError(
                        f"Host phase '{phase.name}' failed", cmd=['bash', '-c', script_name],
                        code=getattr(getattr(ex, 'result', None), 'code', None),
                    )
                failed = True
        if not failed:
            print(f'✓ {phase.name} completed')


def run_teardown_phases(lima, ctx: PhaseContext, config: Config) -> None:
    """Best effort: errors are reported and never stop VM cleanup."""
    if config.phase.teardown:
        try:
            run_vm_phases(lima, ctx, config.phase.teardown, context='Teardown')
        except Exception as ex:
            log.warning('Teardown phases failed: {}', ex)
    if config.phase.host.teardown:
        try:
            run_host_phases(ctx, config.phase.host.teardown, 'teardown')
        except Exception as ex:
            log.warning('Host teardown phases failed: {}', ex)


@dataclass(frozen=True)
class RuntimeScript:
    name: str
    content: str
    source: bool = False
    when: str = ''
    continue_on_error: bool = False


def render_runtime_block(index: int, script: RuntimeScript) -> str:
    """
    One runtime script as a bash fragment. The body is passed through a
    quoted heredoc so no expansion happens before bash runs it.
    """
    marker = f'CLAUDE_VM_SCRIPT_EOF_{index}'
    runner = 'source /dev/stdin' if script.source else 'bash'
    tail = ''
    if script.continue_on_error:
        warn = shell_escape(f"⚠ Runtime script '{script.name}' failed, continuing")
        tail = f' || echo {warn} >&2'
    body = script.content if script.content.endswith('\n') else script.content + '\n'
    lines = [
        f'# Runtime script {index}: {script.name}',
        f'echo {shell_escape("Running runtime script: " + script.name)}',
    ]
    run = f"{runner} <<'{marker}'{tail}\n{body}{marker}"
    if script.when:
        skip = shell_escape(f"⊘ Skipping runtime phase '{script.name}' (condition not met)")
        lines.append(f'if ( {script.when} ) > /dev/null 2>&1; then')
        lines.append(run)
        lines.append('else')
        lines.append(f'  echo {skip}')
        lines.append('fi')
    else:
        lines.append(run)
    return '\n'.join(lines) + '\n'


def _phase_runtime_scripts(phase: ScriptPhase, ctx: PhaseContext, include_instance: bool = True) -> list[RuntimeScript]:
    scripts = _load_scripts(phase, ctx.project.root, 'Runtime')
    if scripts is None:
        return []
    env = ctx.phase_env(phase, include_instance=include_instance)
    return [
        RuntimeScript(
            name=script_name,
            content=with_prelude(env, content),
            source=phase.source,
            when=phase.when,
            continue_on_error=phase.continue_on_error,
        )
        for script_name, content in scripts
    ]


def collect_runtime_scripts(config: Config, ctx: PhaseContext) -> list[RuntimeScript]:
    """
    User runtime scripts in execution order: the project's
    ``.claude-vm.runtime.sh``, legacy ``runtime.scripts`` entries, then
    ``[[phase.runtime]]`` phases. Capability runtime phases are excluded;
    they are installed into the template and sourced from
    ``RUNTIME_HOOK_DIR``.
    """
    from .shell import expand_tilde

    root = Path(ctx.project.root)
    out: list[RuntimeScript] = []
    project_script = root / PROJECT_RUNTIME_SCRIPT
    if project_script.is_file():
        out.append(RuntimeScript(
            name=PROJECT_RUNTIME_SCRIPT,
            content=project_script.read_text(encoding='utf-8'),
        ))

    if config.runtime.scripts:
        log.warning(
            '[runtime] scripts array is deprecated. '
            'Please migrate to [[phase.runtime]]'
        )
    for item in config.runtime.scripts:
        fpath = expand_tilde(item) or Path(item)
        if not fpath.is_absolute():
            fpath = root / fpath
        if not fpath.is_file():
            log.warning('Runtime script not found, skipping: {}', fpath)
            continue
        out.append(RuntimeScript(name=fpath.name, content=fpath.read_text(encoding='utf-8')))

    for phase in config.phase.runtime:
        if phase.capability_id:
            continue
        phase.validate('Runtime')
        out.extend(_phase_runtime_scripts(phase, ctx))
    return out


def render_capability_hook(phases: Iterable[ScriptPhase], ctx: PhaseContext) -> str:
    """The runtime hook file a capability installs into ``RUNTIME_HOOK_DIR``."""
    blocks = ['# Installed by claude-vm; sourced by the session entrypoint.\n']
    index = 0
    for phase in phases:
        phase.validate('Runtime')
        for script in _phase_runtime_scripts(phase, ctx, include_instance=False):
            index += 1
            blocks.append(render_runtime_block(index, script))
    return '\n'.join(blocks)


def build_entrypoint(
    runtime_scripts: Sequence[RuntimeScript],
    *,
    vm_name: str,
    env_vars: Optional[dict[str, str]] = None,
    network_env: Optional[dict[str, str]] = None,
) -> str:
    """
    Render the bash script run by ``bash -c <script> -- cmd args...``.

    Order: user environment, network policy variables, capability hooks,
    user runtime scripts, agent context deployment, then ``exec "$@"``.
    """
    parts = ['#!/bin/bash', 'set -e', '', SESSION_PATH_EXPORT]
    parts.append(build_env_export('LIMA_INSTANCE', vm_name))
    for key, value in (env_vars or {}).items():
        parts.append(build_env_export(key, value))
    parts.append('mkdir -p ~/.claude-vm/context')
    if network_env:
        parts.append('')
        parts.append('# Network policy')
        for key, value in network_env.items():
            parts.append(build_env_export(key, value))
    parts.append('')
    parts.append('# Capability runtime hooks')
    parts.append(f'if [ -d {RUNTIME_HOOK_DIR} ]; then')
    parts.append(f'  for _hook in {RUNTIME_HOOK_DIR}/*.sh; do')
    parts.append('    [ -f "$_hook" ] && source "$_hook"')
    parts.append('  done')
    parts.append('  unset _hook')
    parts.append('fi')
    parts.append('')
    for index, script in enumerate(runtime_scripts, start=1):
        parts.append(render_runtime_block(index, script))
    parts.append(_CONTEXT_MERGE)
    parts.append('exec "$@"')
    return '\n'.join(parts) + '\n'


_CONTEXT_MERGE = f'''# Merge runtime context into the agent context file
if [ -f {AGENT_DEPLOY_SCRIPT} ] && [ -f {BASE_CONTEXT_PATH} ]; then
  _ctx=~/.claude-vm/session-context.md
  {{
    sed '/{CONTEXT_RUNTIME_PLACEHOLDER}/,$d' {BASE_CONTEXT_PATH}
    for _f in ~/.claude-vm/context/*.txt; do
      [ -f "$_f" ] && {{ cat "$_f"; echo; }}
    done
    sed '1,/{CONTEXT_RUNTIME_PLACEHOLDER}/d' {BASE_CONTEXT_PATH}
  }} > "$_ctx"
  ( source {AGENT_DEPLOY_SCRIPT} && deploy_context "$_ctx" ) || echo 'Warning: failed to deploy agent context' >&2
  unset _ctx _f
fi
'''


def generate_base_context(config: Config, capabilities: Sequence, mounts: Sequence) -> str:
    """Markdown describing the VM, wrapped in the context markers."""
    lines = [
        CONTEXT_START,
        '# Claude VM Context',
        '',
        'You are running inside an isolated, ephemeral Lima VM managed by claude-vm.',
        'The VM is deleted when the session ends; only mounted directories persist.',
        '',
        '## VM Configuration',
        '',
        f'- **Disk**: {config.vm.disk} GB',
        f'- **Memory**: {config.vm.memory} GB',
        f'- **CPUs**: {config.vm.cpus}',
        '',
        '## Enabled Capabilities',
        '',
    ]
    if capabilities:
        lines.extend(f'- {cap.id}: {cap.description}' for cap in capabilities)
    else:
        lines.append('None')
    lines += ['', '## Mounted Directories', '']
    if mounts:
        for m in mounts:
            mode = 'writable' if m.writable else 'read-only'
            lines.append(f'- {m.guest_path} ({mode})')
    else:
        lines.append('None')
    instructions = config.context.instructions.strip()
    if instructions:
        lines += ['', '## User Instructions', '', instructions]
    lines += ['', '## Runtime Context', '', CONTEXT_RUNTIME_PLACEHOLDER, CONTEXT_END]
    return '\n'.join(lines) + '\n'


def validate_phases(config: Config) -> None:
    """Validate every configured phase up front so errors surface before VM work."""
    for name, context in (('setup', 'Setup'), ('runtime', 'Runtime'), ('teardown', 'Teardown')):
        for phase in getattr(config.phase, name):
            phase.validate(context)
    for f in fields(HostPhaseConfig):
        for phase in getattr(config.phase.host, f.name):
            phase.validate('Host')
    for phase in config.phase.setup + config.phase.teardown:
        if phase.source:
            log.warning(
                "Phase '{}': source = true only applies to runtime phases, ignoring",
                phase.name,
            )
