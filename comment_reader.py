#!/usr/bin/env python3
"""
Comment Reader

Turns the raw bytes of one file revision into an ordered list of comment blocks.

- FileType routing: file name -> language tag -> registered comment syntax
- Lexical languages are tokenized with tree-sitter grammars; a per-language
  predicate selects the comment tokens
- Adjacent single-line comments are merged into one logical block
- Ruby uses a native comment scanner, XML build files use a structural reader
"""

import io
import logging
import re
from dataclasses import dataclass
from enum import Enum
from functools import partial
from typing import Callable, Dict, FrozenSet, Iterable, Iterator, List, Optional, Set

from lxml import etree
from tree_sitter_language_pack import get_parser


logger = logging.getLogger(__name__)


class MinerError(Exception):
    """Base class for errors raised while mining comments."""


class TokenizerError(MinerError):
    """The tokenizer for a file revision could not be constructed or run."""


# ============================================================================
# DATA CLASSES
# ============================================================================

@dataclass(frozen=True)
class Token:
    """A lexical token: line is 1-based, column is the 0-based offset in the line."""
    text: str
    line: int
    column: int
    kind: str


@dataclass(frozen=True)
class CommentBlock:
    """One logical comment, possibly built from several stacked comment tokens."""
    text: str
    start_line: int
    end_line: int
    column: int


# ============================================================================
# FILE TYPES
# ============================================================================

class FileType(Enum):
    UNSUPPORTED = "UNSUPPORTED"
    CPP = "CPP"
    JAVA = "JAVA"
    ECMASCRIPT = "ECMASCRIPT"
    CSHARP = "CSHARP"
    PYTHON = "PYTHON"
    PHP = "PHP"
    RUBY = "RUBY"
    CMAKE = "CMAKE"
    CMAKESOURCE = "CMAKESOURCE"
    QMAKE = "QMAKE"
    MAKEFILE = "MAKEFILE"
    AUTOMAKE = "AUTOMAKE"
    BAZEL = "BAZEL"
    ANT = "ANT"
    MAVEN = "MAVEN"


EXTENSIONS: Dict[str, FileType] = {
    "c": FileType.CPP,
    "cc": FileType.CPP,
    "cp": FileType.CPP,
    "cpp": FileType.CPP,
    "cx": FileType.CPP,
    "cxx": FileType.CPP,
    "c+": FileType.CPP,
    "c++": FileType.CPP,
    "h": FileType.CPP,
    "hh": FileType.CPP,
    "hxx": FileType.CPP,
    "h+": FileType.CPP,
    "h++": FileType.CPP,
    "hp": FileType.CPP,
    "hpp": FileType.CPP,
    "java": FileType.JAVA,
    "js": FileType.ECMASCRIPT,
    "cs": FileType.CSHARP,
    "py": FileType.PYTHON,
    "php": FileType.PHP,
    "rb": FileType.RUBY,
    "cmake": FileType.CMAKE,
    "pro": FileType.QMAKE,
    "pri": FileType.QMAKE,
    "bzl": FileType.BAZEL,
}

# Build/config files recognized by their full base name
SPECIAL_FILE_NAMES: Dict[str, FileType] = {
    "CMakeLists.txt": FileType.CMAKE,
    "Makefile": FileType.MAKEFILE,
    "Makefile.am": FileType.AUTOMAKE,
    "BUILD": FileType.BAZEL,
    "pom.xml": FileType.MAVEN,
    "build.xml": FileType.ANT,
}


def get_file_type(path: str) -> FileType:
    """Classify a repository path by its base name and extension."""
    filename = path.rsplit('/', 1)[-1]

    # macOS resource fork copies
    if filename.startswith('._'):
        return FileType.UNSUPPORTED

    special = SPECIAL_FILE_NAMES.get(filename)
    if special is not None:
        return special

    stem, dot, ext = filename.rpartition('.')
    if not dot:
        return FileType.UNSUPPORTED

    file_type = EXTENSIONS.get(ext) or EXTENSIONS.get(ext.lower())
    if file_type is None:
        return FileType.UNSUPPORTED

    # "config.h.cmake" is a CMake template written in C
    if file_type is FileType.CMAKE and get_file_type(stem) is FileType.CPP:
        return FileType.CMAKESOURCE
    return file_type


def is_supported(file_type: FileType) -> bool:
    return file_type is not FileType.UNSUPPORTED


def file_type_from_tag(tag: str) -> Optional[FileType]:
    """Resolve a language tag such as 'java' or 'CMakeSource' to a FileType."""
    try:
        file_type = FileType[tag.upper()]
    except KeyError:
        return None
    return file_type if is_supported(file_type) else None


def parse_file_types(args: Iterable[str]) -> Set[FileType]:
    """
    Resolve names given on a command line into a set of file types.
    Each argument may be a language tag, a file name or a special build file name.
    """
    types: Set[FileType] = set()
    for arg in args:
        for candidate in (get_file_type(arg), file_type_from_tag(arg), SPECIAL_FILE_NAMES.get(arg)):
            if candidate is not None and is_supported(candidate):
                types.add(candidate)
    return types


# ============================================================================
# SOURCE DECODING + TREE-SITTER TOKENIZER
# ============================================================================

def decode_source(data: bytes) -> str:
    """Decode file content, honoring UTF-8 / UTF-16 byte-order marks."""
    if data[:3] == b'\xef\xbb\xbf':
        return data[3:].decode('utf-8', errors='replace')
    if data[:2] == b'\xfe\xff':
        return data[2:].decode('utf-16-be', errors='replace')
    if data[:2] == b'\xff\xfe':
        return data[2:].decode('utf-16-le', errors='replace')
    return data.decode('utf-8', errors='replace')


_parser_cache: Dict[str, object] = {}


def _get_parser(grammar: str):
    if grammar not in _parser_cache:
        try:
            _parser_cache[grammar] = get_parser(grammar)
        except Exception as e:
            raise TokenizerError(f"No tree-sitter grammar for {grammar}: {e}") from e
    return _parser_cache[grammar]


def tokenize_tree_sitter(data: bytes, grammar: str, atomic_kinds: FrozenSet[str]) -> Iterator[Token]:
    """
    Flatten a tree-sitter parse tree into document-ordered tokens.
    Leaves become tokens; nodes listed in atomic_kinds are emitted whole.
    """
    source = decode_source(data).encode('utf-8')
    parser = _get_parser(grammar)
    try:
        tree = parser.parse(source)
    except Exception as e:
        raise TokenizerError(f"{grammar} parser failed: {e}") from e

    stack = [tree.root_node]
    while stack:
        node = stack.pop()
        if node.type in atomic_kinds or node.child_count == 0:
            if node.end_byte > node.start_byte:
                row, byte_column = node.start_point
                # start_point counts bytes; columns are character offsets
                prefix = source[node.start_byte - byte_column:node.start_byte]
                column = len(prefix.decode('utf-8', errors='replace'))
                text = source[node.start_byte:node.end_byte].decode('utf-8', errors='replace')
                yield Token(text=text, line=row + 1, column=column, kind=node.type)
            continue
        stack.extend(reversed(node.children))


HTML_COMMENT_RE = re.compile(r"<!--.*?-->", re.DOTALL)


def tokenize_php(data: bytes) -> Iterator[Token]:
    """
    PHP tokens plus one 'html_comment' token for each <!-- --> comment
    found in the inline HTML around the PHP tags.
    """
    for token in tokenize_tree_sitter(data, 'php', frozenset(['comment', 'text'])):
        if token.kind != 'text':
            yield token
            continue
        for m in HTML_COMMENT_RE.finditer(token.text):
            newlines = token.text.count('\n', 0, m.start())
            if newlines:
                column = m.start() - token.text.rfind('\n', 0, m.start()) - 1
            else:
                column = token.column + m.start()
            yield Token(text=m.group(0), line=token.line + newlines, column=column, kind='html_comment')


# ============================================================================
# RUBY COMMENT SCANNER
# ============================================================================

HEREDOC_RE = re.compile(r"<<([~-]?)([\"'`]?)([A-Za-z_]\w*)\2")

# "<<" opens a heredoc only after one of these; "out<<x" is an append
HEREDOC_PRECEDERS = frozenset(' \t(,=[')


def _is_embdoc_marker(line: str, marker: str) -> bool:
    return line.startswith(marker) and (len(line) == len(marker) or line[len(marker)].isspace())


def tokenize_ruby(data: bytes) -> Iterator[Token]:
    """
    Scan Ruby source for '#' line comments and '=begin'/'=end' documents.

    String literals and heredoc bodies are skipped so that '#' inside them
    is not reported. Percent literals and regular expressions are not
    recognized.
    """
    lines = decode_source(data).split('\n')
    quote: Optional[str] = None
    i = 0

    while i < len(lines):
        line = lines[i]

        if quote is None:
            if line.rstrip('\r') == '__END__':
                return
            if _is_embdoc_marker(line, '=begin'):
                end = i
                while end + 1 < len(lines) and not _is_embdoc_marker(lines[end], '=end'):
                    end += 1
                yield Token(text='\n'.join(lines[i:end + 1]), line=i + 1, column=0, kind='embdoc')
                i = end + 1
                continue

        heredocs = []
        j = 0
        while j < len(line):
            ch = line[j]
            if quote is not None:
                if ch == '\\':
                    j += 2
                    continue
                if ch == quote:
                    quote = None
                j += 1
                continue
            if ch == '#':
                yield Token(text=line[j:].rstrip('\r'), line=i + 1, column=j, kind='comment')
                break
            if ch in '"\'`':
                quote = ch
                j += 1
                continue
            m = HEREDOC_RE.match(line, j) if j == 0 or line[j - 1] in HEREDOC_PRECEDERS else None
            if m:
                heredocs.append((m.group(3), m.group(1) != ''))
                j = m.end()
                continue
            j += 1

        # Skip heredoc bodies that start on the following line
        for ident, indented in heredocs:
            end = i + 1
            while end < len(lines):
                body = lines[end].strip() if indented else lines[end].rstrip('\r')
                if body == ident:
                    break
                end += 1
            if end >= len(lines):
                # Unterminated: resume scanning right after the opener
                logger.debug(f"No terminator for heredoc {ident} opened on line {i + 1}")
                break
            i = end
        i += 1


# ============================================================================
# XML COMMENT READER
# ============================================================================

def read_xml_comments(data: bytes) -> List[CommentBlock]:
    """
    Report each XML comment node as one block.
    A syntax error ends the scan; comments read before it are kept.
    """
    blocks: List[CommentBlock] = []
    try:
        for _event, node in etree.iterparse(io.BytesIO(data), events=("comment",), resolve_entities=False):
            line = node.sourceline or 1
            blocks.append(CommentBlock(text=node.text or '', start_line=line, end_line=line, column=0))
    except etree.XMLSyntaxError as e:
        logger.debug(f"XML comment scan stopped: {e}")
    return blocks


# ============================================================================
# COMMENT MERGER
# ============================================================================

def merge_comments(tokens: Iterable[Token], is_comment: Callable[[Token], bool]) -> List[CommentBlock]:
    """
    Merge comment tokens into logical blocks.

    A comment token extends the current block when it starts on the block's
    last line, or on the next line at the block's column. The block's end
    line is the start line of the last token merged into it.
    """
    blocks: List[CommentBlock] = []
    text: Optional[str] = None
    start_line = end_line = column = 0

    for token in tokens:
        if not is_comment(token):
            continue
        if text is not None and token.line == end_line:
            text = text + ' ' + token.text
        elif text is not None and token.line == end_line + 1 and token.column == column:
            text = text + '\n' + token.text
            end_line = token.line
        else:
            if text is not None:
                blocks.append(CommentBlock(text, start_line, end_line, column))
            text = token.text
            start_line = end_line = token.line
            column = token.column

    if text is not None:
        blocks.append(CommentBlock(text, start_line, end_line, column))
    return blocks


# ============================================================================
# SYNTAX REGISTRY (FileTypeRouter / TokenFilter)
# ============================================================================

@dataclass(frozen=True)
class CommentSyntax:
    """How to read the comments of one file type."""
    tokenizer: Optional[Callable[[bytes], Iterable[Token]]] = None
    is_comment: Optional[Callable[[Token], bool]] = None
    block_reader: Optional[Callable[[bytes], List[CommentBlock]]] = None

    def read_comments(self, data: bytes) -> List[CommentBlock]:
        if self.block_reader is not None:
            return self.block_reader(data)
        return merge_comments(self.tokenizer(data), self.is_comment)


def kind_filter(kinds: Iterable[str]) -> Callable[[Token], bool]:
    accepted = frozenset(kinds)
    return lambda token: token.kind in accepted


def _is_python_comment(token: Token) -> bool:
    return token.kind == 'comment' or (token.kind == 'string' and '"""' in token.text)


def lexical_syntax(grammar: str, comment_kinds: Iterable[str], is_comment=None, atomic_kinds=()) -> CommentSyntax:
    comment_kinds = frozenset(comment_kinds)
    return CommentSyntax(
        tokenizer=partial(tokenize_tree_sitter, grammar=grammar,
                          atomic_kinds=comment_kinds | frozenset(atomic_kinds)),
        is_comment=is_comment or kind_filter(comment_kinds),
    )


_SYNTAXES: Dict[FileType, CommentSyntax] = {}


def register_syntax(file_type: FileType, syntax: CommentSyntax):
    _SYNTAXES[file_type] = syntax


def syntax_for(file_type: FileType) -> Optional[CommentSyntax]:
    return _SYNTAXES.get(file_type)


def route(path: str) -> Optional[CommentSyntax]:
    """Return the comment syntax for a path, or None when the file is not analyzed."""
    return syntax_for(get_file_type(path))


def read_comments(file_type: FileType, data: bytes) -> List[CommentBlock]:
    """Read the comment blocks of one file revision. Raises TokenizerError."""
    syntax = syntax_for(file_type)
    if syntax is None:
        raise TokenizerError(f"No comment syntax registered for {file_type.name}")
    return syntax.read_comments(data)


_cpp = lexical_syntax('cpp', ['comment'])
_python = lexical_syntax('python', ['comment'], is_comment=_is_python_comment, atomic_kinds=['string'])
_make = lexical_syntax('make', ['comment'])
_xml = CommentSyntax(block_reader=read_xml_comments)

register_syntax(FileType.CPP, _cpp)
register_syntax(FileType.CMAKESOURCE, _cpp)
register_syntax(FileType.JAVA, lexical_syntax('java', ['line_comment', 'block_comment']))
register_syntax(FileType.ECMASCRIPT, lexical_syntax('javascript', ['comment']))
register_syntax(FileType.CSHARP, lexical_syntax('csharp', ['comment']))
register_syntax(FileType.PYTHON, _python)
register_syntax(FileType.BAZEL, _python)
register_syntax(FileType.PHP, CommentSyntax(tokenizer=tokenize_php, is_comment=kind_filter(['comment', 'html_comment'])))
register_syntax(FileType.CMAKE, lexical_syntax('cmake', ['line_comment', 'bracket_comment']))
register_syntax(FileType.MAKEFILE, _make)
register_syntax(FileType.AUTOMAKE, _make)
register_syntax(FileType.QMAKE, _make)
register_syntax(FileType.RUBY, CommentSyntax(tokenizer=tokenize_ruby, is_comment=kind_filter(['comment', 'embdoc'])))
register_syntax(FileType.ANT, _xml)
register_syntax(FileType.MAVEN, _xml)
