"""Runtime probes."""

from jjdag.probes.repo import (
    find_jj_root,
    find_repository,
    find_scooped_workspace,
    hosts_repo,
    repo_dir_for,
)
from jjdag.probes.tools import SubprocessError, run_command, run_command_output_cwd
