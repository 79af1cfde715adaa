"""
File selection for backup operations.

A file manager owns the backup root: it chooses which files enter a backup
(include/exclude rules with ANT-style globs) and writes an extracted backup
back onto the root during restore.

Supports:
- FullBackup: everything under the root except the excluded patterns
- PatternBackup: explicit include and exclude patterns
- ConfigOnly: only the top-level XML files and the job configurations
"""

import json
import logging
import os
import re
import shutil
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Tuple


logger = logging.getLogger(__name__)

PATTERN_SEPARATOR = ';'
DEFAULT_INCLUDES = ('**',)
CONFIG_ONLY_INCLUDES = '*.xml;jobs/*/config.xml'


class SelectionError(Exception):
    """Raised when the backup root cannot be scanned or restored."""
    pass


def split_patterns(patterns_string: Optional[str]) -> Tuple[str, ...]:
    """
    Split a semicolon-separated pattern string.

    Blank entries are dropped, so None, '' and '   ' all yield no patterns.
    """
    if not patterns_string:
        return ()
    return tuple(p.strip() for p in patterns_string.split(PATTERN_SEPARATOR) if p.strip())


def _segment_regex(segment: str) -> str:
    regex = ''
    for char in segment:
        if char == '*':
            regex += '[^/]*'
        elif char == '?':
            regex += '[^/]'
        else:
            regex += re.escape(char)
    return regex


def compile_pattern(pattern: str) -> re.Pattern:
    """
    Compile an ANT-style glob into a regular expression.

    - '*' matches within one path segment, '?' matches one character
    - '**' matches any number of segments, including none
    - a trailing '/' matches everything below that directory

    Args:
        pattern: Glob relative to the backup root, '/' separated

    Returns:
        Compiled regex to be used with fullmatch()
    """
    pattern = pattern.replace('\\', '/').lstrip('/')
    if pattern.endswith('/'):
        pattern += '**'

    parts = pattern.split('/')
    regex = ''
    for index, part in enumerate(parts):
        last = index == len(parts) - 1
        if part == '**':
            regex += '.*' if last else '(?:[^/]*/)*'
        else:
            regex += _segment_regex(part)
            if not last:
                regex += '/'

    return re.compile(regex)


@dataclass(frozen=True)
class SelectionRuleSet:
    """
    Immutable include/exclude rules.

    A path is selected if it matches at least one include pattern and
    no exclude pattern.
    """

    includes: Tuple[str, ...] = DEFAULT_INCLUDES
    excludes: Tuple[str, ...] = ()
    follow_symlinks: bool = False
    _include_regexes: Tuple[re.Pattern, ...] = field(init=False, repr=False, compare=False)
    _exclude_regexes: Tuple[re.Pattern, ...] = field(init=False, repr=False, compare=False)

    def __post_init__(self):
        includes = tuple(self.includes) or DEFAULT_INCLUDES
        excludes = tuple(self.excludes)
        object.__setattr__(self, 'includes', includes)
        object.__setattr__(self, 'excludes', excludes)
        object.__setattr__(self, '_include_regexes', tuple(compile_pattern(p) for p in includes))
        object.__setattr__(self, '_exclude_regexes', tuple(compile_pattern(p) for p in excludes))

    @classmethod
    def from_strings(cls, includes_string: Optional[str] = None, excludes_string: Optional[str] = None,
                     follow_symlinks: bool = False) -> 'SelectionRuleSet':
        return cls(
            includes=split_patterns(includes_string),
            excludes=split_patterns(excludes_string),
            follow_symlinks=follow_symlinks
        )

    def matches(self, relative_path: str) -> bool:
        path = relative_path.replace(os.sep, '/')
        if not any(regex.fullmatch(path) for regex in self._include_regexes):
            return False
        return not any(regex.fullmatch(path) for regex in self._exclude_regexes)


class FileManager:
    """
    Base class for file managers.

    Subclasses define the rule set and the restore policy:
    - 'replace': delete the deletable files under the root, then copy the backup in
    - 'overwrite': copy the backup over the existing files
    """

    type_name = None
    restore_policy = 'replace'

    def __init__(self, root: str, rule_set: SelectionRuleSet):
        self.root = os.path.abspath(os.path.expanduser(root))
        self.rule_set = rule_set

    def select(self) -> List[str]:
        """
        Scan the backup root and apply the rule set.

        Returns:
            Selected file paths relative to the root ('/' separated), in a
            stable order for identical filesystem state

        Raises:
            SelectionError: If the root directory cannot be read
        """
        if not os.path.isdir(self.root):
            raise SelectionError(f"Backup root is not a directory: {self.root}")

        try:
            os.listdir(self.root)
        except OSError as e:
            raise SelectionError(f"Cannot read backup root {self.root}: {e}")

        def on_error(error: OSError):
            if error.filename and os.path.abspath(error.filename) == self.root:
                raise SelectionError(f"Cannot read backup root {self.root}: {error}")
            logger.warning(f"Skipping unreadable directory {error.filename}: {error}")

        follow = self.rule_set.follow_symlinks
        visited = set()
        selected = []

        for dirpath, dirnames, filenames in os.walk(self.root, onerror=on_error, followlinks=follow):
            if follow:
                # Only a linked directory can close a loop; real directories are always scanned
                real_dir = os.path.realpath(dirpath)
                if os.path.islink(dirpath) and real_dir in visited:
                    logger.warning(f"Skipping already visited linked directory: {dirpath}")
                    dirnames[:] = []
                    continue
                visited.add(real_dir)

            dirnames.sort()

            for name in sorted(filenames):
                full_path = os.path.join(dirpath, name)

                if os.path.islink(full_path):
                    if not follow:
                        continue
                    if not os.path.isfile(full_path):
                        logger.warning(f"Skipping dangling or non-file symbolic link: {full_path}")
                        continue
                elif not os.path.isfile(full_path):
                    continue

                relative_path = os.path.relpath(full_path, self.root).replace(os.sep, '/')
                if not self.rule_set.matches(relative_path):
                    continue

                if not os.access(full_path, os.R_OK):
                    logger.warning(f"Skipping unreadable file: {full_path}")
                    continue

                selected.append(relative_path)

        return selected

    def restore_files(self, final_result_dir: str, protected_paths: Iterable[str] = ()):
        """
        Write an extracted backup onto the backup root.

        Args:
            final_result_dir: Directory holding the extracted backup
            protected_paths: Paths under the root that must never be deleted
                (e.g. the restore's own temp directory)

        Raises:
            SelectionError: If final_result_dir does not exist
            shutil.Error: If some files could not be copied
        """
        if not os.path.isdir(final_result_dir):
            raise SelectionError(f"Restore source is not a directory: {final_result_dir}")

        protected = [os.path.abspath(final_result_dir)] + [os.path.abspath(p) for p in protected_paths]

        if self.restore_policy == 'replace':
            deleted = self._delete_deletable_files(protected)
            logger.info(f"Deleted {deleted} files under {self.root}")

        os.makedirs(self.root, exist_ok=True)
        logger.info(f"Copying {final_result_dir} to {self.root}")
        shutil.copytree(final_result_dir, self.root, dirs_exist_ok=True)

    def _delete_deletable_files(self, protected: List[str]) -> int:
        def is_protected(path: str) -> bool:
            path = os.path.abspath(path)
            return any(path == p or path.startswith(p + os.sep) for p in protected)

        def holds_protected(path: str) -> bool:
            path = os.path.abspath(path)
            return any(p.startswith(path + os.sep) for p in protected)

        deleted = 0
        for dirpath, dirnames, filenames in os.walk(self.root, topdown=False):
            if is_protected(dirpath):
                continue

            for name in filenames:
                path = os.path.join(dirpath, name)
                if is_protected(path):
                    continue
                try:
                    os.remove(path)
                    deleted += 1
                except OSError as e:
                    logger.warning(f"Could not delete {path}: {e}")

            for name in dirnames:
                path = os.path.join(dirpath, name)
                if is_protected(path) or holds_protected(path):
                    continue
                try:
                    if os.path.islink(path):
                        os.remove(path)
                    elif not os.listdir(path):
                        os.rmdir(path)
                except OSError as e:
                    logger.warning(f"Could not delete directory {path}: {e}")

        return deleted

    def to_descriptor(self) -> Dict[str, Any]:
        raise NotImplementedError

    def __eq__(self, other):
        return type(self) is type(other) and self.to_descriptor() == other.to_descriptor()

    def __hash__(self):
        return hash(json.dumps(self.to_descriptor(), sort_keys=True))

    def __repr__(self):
        return f'<{type(self).__name__} root={self.root}>'


class FullBackup(FileManager):
    """
    Selects every file under the root except the excluded patterns.

    Restoring deletes all deletable files under the root first.
    """

    type_name = 'full'

    def __init__(self, root: str, excludes_string: Optional[str] = None, follow_symlinks: bool = False):
        super().__init__(root, SelectionRuleSet.from_strings(None, excludes_string, follow_symlinks))
        self.excludes_string = excludes_string

    def to_descriptor(self) -> Dict[str, Any]:
        return {
            'type': self.type_name,
            'root': self.root,
            'excludes': self.excludes_string,
            'follow_symlinks': self.rule_set.follow_symlinks
        }


class PatternBackup(FileManager):
    """Selects files by explicit include and exclude patterns."""

    type_name = 'pattern'

    def __init__(self, root: str, includes_string: Optional[str] = None, excludes_string: Optional[str] = None,
                 follow_symlinks: bool = False):
        super().__init__(root, SelectionRuleSet.from_strings(includes_string, excludes_string, follow_symlinks))
        self.includes_string = includes_string
        self.excludes_string = excludes_string

    def to_descriptor(self) -> Dict[str, Any]:
        return {
            'type': self.type_name,
            'root': self.root,
            'includes': self.includes_string,
            'excludes': self.excludes_string,
            'follow_symlinks': self.rule_set.follow_symlinks
        }


class ConfigOnly(FileManager):
    """
    Selects only configuration files: XML files at the root and
    jobs/*/config.xml. Restoring overwrites without deleting anything.
    """

    type_name = 'config_only'
    restore_policy = 'overwrite'

    def __init__(self, root: str):
        super().__init__(root, SelectionRuleSet.from_strings(CONFIG_ONLY_INCLUDES))

    def to_descriptor(self) -> Dict[str, Any]:
        return {'type': self.type_name, 'root': self.root}


def create_file_manager(descriptor: Dict[str, Any]) -> FileManager:
    """
    Factory function to create a file manager from its descriptor.

    Args:
        descriptor: Dict with a 'type' key ('full', 'pattern' or 'config_only')
            and the variant's settings

    Returns:
        FileManager instance

    Raises:
        ValueError: If the type is invalid or the root is missing
    """
    manager_type = descriptor.get('type')
    root = descriptor.get('root')
    if not root:
        raise ValueError("File manager descriptor has no root")

    if manager_type == FullBackup.type_name:
        return FullBackup(root, descriptor.get('excludes'), bool(descriptor.get('follow_symlinks', False)))
    elif manager_type == PatternBackup.type_name:
        return PatternBackup(
            root,
            descriptor.get('includes'),
            descriptor.get('excludes'),
            bool(descriptor.get('follow_symlinks', False))
        )
    elif manager_type == ConfigOnly.type_name:
        return ConfigOnly(root)
    else:
        raise ValueError(f"Invalid file manager type: {manager_type}")
