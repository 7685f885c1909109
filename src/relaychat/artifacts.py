"""Extract a virtual project tree from code blocks in assistant answers."""

from __future__ import annotations

import logging
import posixpath
import re
from dataclasses import dataclass
from typing import Iterable, Iterator, NamedTuple

from .channels import split_channels
from .models import Message, TreeNode, VirtualFile

logger = logging.getLogger(__name__)

SYNTHETIC_ROOT = "project"

# Extension-less names that are real files, not labels for "<name>.<ext>".
SPECIAL_FILENAMES = {
    "makefile", "dockerfile", "containerfile", "procfile", "gemfile",
    "rakefile", "vagrantfile", "jenkinsfile", "brewfile", "pipfile",
    "license", "readme", "changelog", "codeowners", "authors", "notice",
}

_FENCE_RE = re.compile(r"^ {0,3}(?P<fence>`{3,}|~{3,})(?P<info>.*)$")

_LABEL = r"(?:file(?:name)?|path)"
_LEAD = r"(?:#{1,6}\s+)?(?:\d+\.\s+|[-*+]\s+)?"

# Marker on the line right before a fence, most specific first. Labelled
# markers accept bare names; the others need something path-like.
_MARKER_PATTERNS = [
    (re.compile(
        rf"^{_LEAD}(?:\*\*|__)?{_LABEL}\s*:\s*(?:\*\*|__)?\s*`?(?P<path>[^`*\s]+?)`?(?:\*\*|__)?\s*:?$",
        re.IGNORECASE,
    ), False),
    (re.compile(rf"^{_LEAD}(?:\*\*|__)?`(?P<path>[^`\s]+)`(?:\*\*|__)?\s*:?$"), True),
    (re.compile(rf"^{_LEAD}(?:\*\*|__)(?P<path>[^*_\s`]+?)(?:\*\*|__)\s*:?$"), True),
    (re.compile(r"^#{1,6}\s+(?P<path>\S+?)\s*:?$"), True),
    (re.compile(r"^(?P<path>[\w./-]+\.\w+):$"), True),
]

# "File: <path>" as the first line of the block, in common comment syntaxes.
_COMMENT_PATTERNS = [
    re.compile(rf"^\s*(?://|#|--|;|%)\s*{_LABEL}\s*:\s*(?P<path>\S+)\s*$", re.IGNORECASE),
    re.compile(rf"^\s*/\*+\s*{_LABEL}\s*:\s*(?P<path>\S+?)\s*\*+/\s*$", re.IGNORECASE),
    re.compile(rf"^\s*<!--\s*{_LABEL}\s*:\s*(?P<path>\S+?)\s*-->\s*$", re.IGNORECASE),
]

_EXT_RE = re.compile(r"\.[A-Za-z0-9_+-]+$")


@dataclass
class CodeBlock:
    info: str
    body: str
    preceding: str
    closed: bool


def iter_code_blocks(text: str) -> Iterator[CodeBlock]:
    """Fenced blocks in order; a trailing unterminated block is included."""
    lines = (text or "").replace("\r\n", "\n").split("\n")
    prose_start = 0
    i = 0
    while i < len(lines):
        match = _FENCE_RE.match(lines[i])
        if match is None or (match.group("fence")[0] == "`" and "`" in match.group("info")):
            i += 1
            continue
        fence = match.group("fence")
        body: list[str] = []
        j = i + 1
        while j < len(lines):
            candidate = lines[j].strip()
            if len(candidate) >= len(fence) and set(candidate) == {fence[0]}:
                break
            body.append(lines[j])
            j += 1
        yield CodeBlock(
            info=match.group("info").strip(),
            body="\n".join(body),
            preceding="\n".join(lines[prose_start:i]),
            closed=j < len(lines),
        )
        i = j + 1
        prose_start = i


def normalize_path(raw: str, strict: bool = True) -> str | None:
    """Clean a candidate path; None if it does not look like a file path."""
    path = raw.strip().strip("`'\"").replace("\\", "/")
    if not path or "://" in path or len(path) > 255:
        return None
    parts = [p for p in path.split("/") if p and p != "."]
    if not parts or ".." in parts or path.endswith("/"):
        return None
    name = parts[-1]
    if strict and not (len(parts) > 1 or _EXT_RE.search(name) or is_special_filename(name)):
        return None
    return "/".join(parts)


def is_special_filename(name: str) -> bool:
    return name.startswith(".") or name.lower() in SPECIAL_FILENAMES


def split_ext(name: str) -> tuple[str, str]:
    stem, ext = posixpath.splitext(name)
    if len(ext) <= 1:
        return name, ""
    return stem, ext


def marker_path(preceding: str) -> str | None:
    """Path announced on the last non-blank line before a fence."""
    for line in reversed(preceding.split("\n")):
        line = line.strip()
        if not line:
            continue
        for pattern, strict in _MARKER_PATTERNS:
            match = pattern.match(line)
            if match:
                path = normalize_path(match.group("path"), strict)
                if path:
                    return path
        return None
    return None


def comment_path(first_line: str) -> str | None:
    for pattern in _COMMENT_PATTERNS:
        match = pattern.match(first_line)
        if match:
            return normalize_path(match.group("path"), strict=False)
    return None


class DetectedPath(NamedTuple):
    path: str
    from_comment: bool


def detect_path(block_text: str, preceding_text: str = "", closed: bool = True) -> DetectedPath | None:
    """Marker before the block wins over a "File:" comment inside it.

    The comment is only read once its line is complete, so a path still
    arriving character by character is never reported truncated.
    """
    path = marker_path(preceding_text)
    if path is not None:
        return DetectedPath(path, False)
    first, newline, _ = block_text.partition("\n")
    if not newline and not closed:
        return None
    path = comment_path(first)
    return DetectedPath(path, True) if path is not None else None


class ArtifactExtractor:
    """Path -> content map over settled answers plus one still growing.

    update() replaces the growing answer and rebuilds the map from scratch,
    so entries seen in an earlier, shorter version of it never linger.
    """

    def __init__(self, root_name: str = SYNTHETIC_ROOT):
        self.root_name = root_name
        self._settled: dict[str, str] = {}
        self._files: dict[str, str] = {}

    def reset(self):
        self._settled = {}
        self._files = {}

    def update(self, answer_text: str):
        self._files = dict(self._settled)
        self._scan(answer_text)

    def settle(self, answer_text: str):
        """Fold a finished answer into the base the next answer builds on."""
        self.update(answer_text)
        self._settled = dict(self._files)

    def _scan(self, answer_text: str):
        for block in iter_code_blocks(answer_text):
            found = detect_path(block.body, block.preceding, block.closed)
            if found is None:
                continue
            body = block.body.partition("\n")[2] if found.from_comment else block.body
            self.add(found.path, body)

    def add(self, path: str, content: str):
        directory, name = posixpath.split(path)
        stem, ext = split_ext(name)
        if not ext and not is_special_filename(name):
            for existing in self._files:
                other_dir, other_name = posixpath.split(existing)
                other_stem, other_ext = split_ext(other_name)
                if other_dir == directory and other_ext and other_stem == name:
                    logger.debug("Ignoring %s; %s already holds that file", path, existing)
                    return
        elif ext:
            bare = posixpath.join(directory, stem)
            if bare in self._files and not is_special_filename(stem):
                logger.debug("Replacing bare label %s with %s", bare, path)
                del self._files[bare]
        self._files[path] = content

    @property
    def paths(self) -> list[str]:
        return list(self._files)

    @property
    def files(self) -> list[VirtualFile]:
        return [VirtualFile(path=p, content=c) for p, c in self._files.items()]

    def get(self, path: str) -> str | None:
        return self._files.get(path)

    @property
    def tree(self) -> TreeNode:
        return build_tree(self._files, self.root_name)


def extract_files(messages: Iterable[Message], root_name: str = SYNTHETIC_ROOT) -> ArtifactExtractor:
    """Rebuild the artifact map from every assistant answer of a conversation."""
    extractor = ArtifactExtractor(root_name)
    for m in messages:
        if m.role == "assistant":
            extractor.settle(split_channels(m.content).answer)
    return extractor


def build_tree(paths: Iterable[str], root_name: str = SYNTHETIC_ROOT) -> TreeNode:
    """Directory tree over *paths*, recomputed from scratch each call.

    When every path lives under the same top-level folder, that folder is the
    root; otherwise everything hangs off a synthetic root.
    """
    split = [p.split("/") for p in sorted(set(paths))]
    firsts = {parts[0] for parts in split}
    if len(firsts) == 1 and all(len(parts) > 1 for parts in split):
        top = split[0][0]
        root = TreeNode(name=top, type="folder", path=top, children=[])
        split = [parts[1:] for parts in split]
        prefix = top
    else:
        root = TreeNode(name=root_name, type="folder", path="", children=[])
        prefix = ""

    for parts in split:
        node = root
        node_path = prefix
        for i, part in enumerate(parts):
            node_path = f"{node_path}/{part}" if node_path else part
            is_file = i == len(parts) - 1
            kind = "file" if is_file else "folder"
            child = next((c for c in node.children if c.name == part and c.type == kind), None)
            if child is None:
                child = TreeNode(name=part, type=kind, path=node_path, children=None if is_file else [])
                node.children.append(child)
            node = child

    _sort_tree(root)
    return root


def _sort_tree(node: TreeNode):
    if node.children is None:
        return
    node.children.sort(key=lambda c: (c.type != "folder", c.name.lower(), c.name))
    for child in node.children:
        _sort_tree(child)
