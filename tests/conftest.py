"""Shared fixtures: a small project on disk and coverage data files for it."""

import pytest
from coverage import CoverageData

from coverage_harness.models import HarnessConfig


APP_SOURCE = '''\
def add(a, b):
    return a + b


def sub(a, b):
    return a - b


print(add(1, 2))
'''


@pytest.fixture
def sample_project(tmp_path):
    """A project directory holding app.py and a helper package."""
    project = tmp_path / 'project'
    (project / 'lib').mkdir(parents=True)
    (project / 'app.py').write_text(APP_SOURCE)
    (project / 'lib' / '__init__.py').write_text('')
    (project / 'lib' / 'helpers.py').write_text('def double(x):\n    return 2 * x\n')
    (project / 'README.txt').write_text('not python\n')
    return project


@pytest.fixture
def write_snapshot():
    """Write a coverage data file recording ``{filename: [lines]}``."""
    def _write(path, measured):
        data = CoverageData(basename=str(path))
        data.add_lines({str(name): lines for name, lines in measured.items()})
        data.write()
        return str(path)

    return _write


@pytest.fixture
def harness_config(tmp_path):
    """Configuration pointing every harness path into ``tmp_path``."""
    return HarnessConfig(
        work_dir=str(tmp_path / 'work'),
        run_command='{python} app.py',
        pid_file=str(tmp_path / 'child.pid'),
        report_dir=str(tmp_path / 'report'),
        snapshot_timeout=10.0,
        poll_interval=0.1,
        max_poll_interval=0.5,
    )
