"""
Source staging and capture injection.

coverage.py measures code at runtime, so "instrumenting" a staged file means
registering it for measurement and remembering which real source file it must
be reported as. The capture itself is a generated ``sitecustomize`` bootstrap:
it starts coverage in the monitored process and, on SIGINT, saves the data and
renames it to the snapshot path in one step so the watcher never sees a
half-written file.
"""

import configparser
import fnmatch
import os
import shutil
from typing import Dict, List, Optional

from .models import HarnessConfig
from .logging_utils import get_logger, performance_timer
from .error_handling import InstrumentationError

logger = get_logger(__name__)

BOOTSTRAP_TEMPLATE = '''\
"""Coverage capture bootstrap generated by coverage_harness."""

import os
import signal

import coverage

_PARTIAL = {partial!r}
_SNAPSHOT = {snapshot!r}

# Coverage may already have been started by the .pth hook that newer
# coverage releases install, in which case process_startup returns None.
_cov = coverage.process_startup() or coverage.Coverage.current()
# Only the monitored process itself is measured, not its children.
os.environ.pop("COVERAGE_PROCESS_START", None)


def _flush_coverage(signum, frame):
    _cov.stop()
    _cov.save()
    os.replace(_PARTIAL, _SNAPSHOT)
    os._exit(0)


if _cov is not None:
    signal.signal(signal.SIGINT, _flush_coverage)
'''


class Instrumenter:
    """
    Stages a project into the work directory and prepares it for measurement.

    Call order matters: ``stage``, then ``instrument``/``instrument_project``,
    then ``inject_capture``. The bootstrap lives outside the staged tree so it
    never shows up in the collected data.
    """

    def __init__(self, config: HarnessConfig):
        self.config = config
        self.source_root: Optional[str] = None
        self._sources: Dict[str, str] = {}

    @property
    def rc_path(self) -> str:
        return os.path.join(self.config.bootstrap_dir, '.coveragerc')

    @property
    def partial_snapshot_path(self) -> str:
        return self.config.snapshot_path + '.partial'

    @property
    def instrumented_files(self) -> Dict[str, str]:
        """Staged file -> real source file for everything registered so far."""
        return dict(self._sources)

    @performance_timer("project_staging")
    def stage(self, project_dir: str) -> str:
        """
        Copy the project into the work directory, replacing any earlier copy.

        Args:
            project_dir: Directory holding the real project source

        Returns:
            str: The staged project directory
        """
        project_dir = os.path.abspath(project_dir)
        if not os.path.isdir(project_dir):
            raise InstrumentationError(f"Project directory not found: {project_dir}")

        staged_dir = self.config.project_dir
        if os.path.exists(staged_dir):
            shutil.rmtree(staged_dir)

        shutil.copytree(project_dir, staged_dir,
                        ignore=shutil.ignore_patterns('__pycache__', '*.pyc', '.git'))

        self.source_root = project_dir
        self._sources.clear()

        logger.info("Project staged", source_dir=project_dir, staged_dir=staged_dir)
        return staged_dir

    def instrument(self, tmp_src: str, real_src: str) -> str:
        """
        Register a staged file for measurement.

        The file is compiled to catch syntax errors up front; its text is left
        untouched.

        Args:
            tmp_src: The staged copy that the monitored process will execute
            real_src: The real source file, used for generating reports

        Returns:
            str: Canonical path of the staged file as coverage.py records it
        """
        if not os.path.isfile(tmp_src):
            raise InstrumentationError(f"Staged source not found: {tmp_src}")

        with open(tmp_src, 'rb') as f:
            source = f.read()

        try:
            compile(source, real_src, 'exec')
        except (SyntaxError, ValueError) as e:
            raise InstrumentationError(f"Cannot instrument {real_src}: {e}") from e

        staged = os.path.realpath(tmp_src)
        self._sources[staged] = os.path.abspath(real_src)
        logger.debug("Source registered for coverage", staged_path=staged, real_path=real_src)
        return staged

    @performance_timer("project_instrumentation")
    def instrument_project(self) -> List[str]:
        """
        Instrument every staged Python file allowed by the include/exclude patterns.

        Patterns are matched against paths relative to the project root.

        Returns:
            List[str]: Canonical staged paths that were registered
        """
        if self.source_root is None:
            raise InstrumentationError("Project must be staged before it is instrumented")

        staged_dir = self.config.project_dir
        registered = []

        for dirpath, dirnames, filenames in os.walk(staged_dir):
            dirnames.sort()
            for filename in sorted(filenames):
                if not filename.endswith('.py'):
                    continue

                tmp_src = os.path.join(dirpath, filename)
                rel_path = os.path.relpath(tmp_src, staged_dir).replace(os.sep, '/')
                if not self._is_selected(rel_path):
                    logger.debug("Skipping source outside include patterns", path=rel_path)
                    continue

                real_src = os.path.join(self.source_root, *rel_path.split('/'))
                registered.append(self.instrument(tmp_src, real_src))

        logger.info("Project instrumented", files=len(registered), staged_dir=staged_dir)
        return registered

    def _is_selected(self, rel_path: str) -> bool:
        include = self.config.include_patterns
        exclude = self.config.exclude_patterns

        if include and not any(fnmatch.fnmatch(rel_path, p) for p in include):
            return False

        if exclude and any(fnmatch.fnmatch(rel_path, p) for p in exclude):
            return False

        return True

    def inject_capture(self) -> str:
        """
        Write the capture bootstrap and its coverage rc file.

        Must run after instrumentation so the rc file lists every registered
        source. Any snapshot left over from an earlier run is removed.

        Returns:
            str: Path of the generated rc file
        """
        bootstrap_dir = self.config.bootstrap_dir
        os.makedirs(bootstrap_dir, exist_ok=True)

        for stale in (self.config.snapshot_path, self.partial_snapshot_path):
            if os.path.exists(stale):
                os.remove(stale)
                logger.debug("Removed stale snapshot", path=stale)

        rc = configparser.ConfigParser(interpolation=None)
        rc['run'] = {
            'data_file': self.partial_snapshot_path,
            'branch': str(self.config.branch_coverage),
            'omit': os.path.join(os.path.realpath(bootstrap_dir), '*'),
        }
        if self._sources:
            rc['run']['include'] = '\n' + '\n'.join(sorted(self._sources))
        else:
            rc['run']['source'] = os.path.realpath(self.config.project_dir)

        with open(self.rc_path, 'w', encoding='utf-8') as f:
            rc.write(f)

        with open(os.path.join(bootstrap_dir, 'sitecustomize.py'), 'w', encoding='utf-8') as f:
            f.write(BOOTSTRAP_TEMPLATE.format(partial=self.partial_snapshot_path,
                                              snapshot=self.config.snapshot_path))

        logger.info("Coverage capture injected",
                    bootstrap_dir=bootstrap_dir,
                    snapshot_path=self.config.snapshot_path,
                    measured_files=len(self._sources))
        return self.rc_path

    def capture_environment(self, base_env: Optional[Dict[str, str]] = None) -> Dict[str, str]:
        """
        Environment for the monitored process that activates the bootstrap.

        Args:
            base_env: Environment to extend (defaults to the current one)

        Returns:
            Dict[str, str]: A new environment mapping
        """
        env = dict(os.environ if base_env is None else base_env)
        env['COVERAGE_PROCESS_START'] = self.rc_path

        python_path = env.get('PYTHONPATH')
        env['PYTHONPATH'] = (self.config.bootstrap_dir + os.pathsep + python_path
                             if python_path else self.config.bootstrap_dir)
        return env

    def map_path(self, path: str) -> str:
        """Translate a path recorded in the staged tree back to the real source."""
        real = self._sources.get(path) or self._sources.get(os.path.realpath(path))
        if real:
            return real

        if self.source_root is not None:
            staged_root = os.path.realpath(self.config.project_dir)
            if path.startswith(staged_root + os.sep):
                return os.path.join(self.source_root, os.path.relpath(path, staged_root))

        return path
