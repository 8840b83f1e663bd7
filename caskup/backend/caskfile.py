'''
Reader for the subset of the Homebrew cask DSL used by the catalog.

A cask file is turned into the same dict shape as a JSON manifest, so both go through
MANIFEST_SCHEMA and Manifest.from_dict afterwards. Stanzas that have no meaning for caskup
(zap, uninstall, caveats, ...) are parsed and dropped.
'''
import logging
import re
from dataclasses import dataclass, field

from .errors import ManifestError


logger = logging.getLogger(__name__)

ARCHITECTURES = ("arm", "intel")

_TOKEN_RE = re.compile(r'''
    (?P<ws>[ \t\r]+|\\\n)
  | (?P<comment>\#[^\n]*)
  | (?P<newline>[\n;])
  | (?P<string>"(?:[^"\\]|\\.)*"|'(?:[^'\\]|\\.)*')
  | (?P<key>[A-Za-z_][A-Za-z0-9_]*[?!]?:(?![:A-Za-z_]))
  | (?P<symbol>:[A-Za-z_][A-Za-z0-9_]*[?!]?)
  | (?P<ident>[A-Za-z_][A-Za-z0-9_.]*[?!]?)
  | (?P<number>\d+(?:\.\d+)*)
  | (?P<arrow>=>)
  | (?P<pipe>\|[^|\n]*\|)
  | (?P<punct>[,\[\](){}])
''', re.VERBOSE)

_ESCAPES = {"n": "\n", "t": "\t", "\\": "\\", '"': '"', "'": "'", "#": "#", "0": "\0"}

_LITERALS = {"true": True, "false": False, "nil": None}


@dataclass
class Token:
    kind: str
    value: str
    line: int


@dataclass
class Stanza:
    name: str
    line: int
    args: list = field(default_factory=list)
    kwargs: dict = field(default_factory=dict)
    block: list | None = None


def _unquote(raw: str) -> str:
    quote, body = raw[0], raw[1:-1]
    if quote == "'":
        return body.replace("\\'", "'").replace("\\\\", "\\")
    return re.sub(r"\\(.)", lambda m: _ESCAPES.get(m.group(1), m.group(1)), body, flags=re.S)


def tokenize(text: str, source="cask") -> list[Token]:
    tokens = []
    pos, line = 0, 1
    while pos < len(text):
        m = _TOKEN_RE.match(text, pos)
        if not m:
            raise ManifestError("%s:%d: unexpected character %r" % (source, line, text[pos]))
        kind, raw = m.lastgroup, m.group()
        if kind == "string":
            tokens.append(Token(kind, _unquote(raw), line))
        elif kind == "key":
            tokens.append(Token(kind, raw[:-1], line))
        elif kind not in ("ws", "comment", "pipe"):
            tokens.append(Token(kind, raw, line))
        line += raw.count("\n")
        pos = m.end()
    tokens.append(Token("eof", "", line))
    return tokens


class _Parser:
    def __init__(self, tokens, source) -> None:
        self._tokens = tokens
        self._pos = 0
        self._source = source

    def _peek(self, offset=0) -> Token:
        return self._tokens[min(self._pos + offset, len(self._tokens) - 1)]

    def _next(self) -> Token:
        tok = self._peek()
        self._pos += 1
        return tok

    def _error(self, message, tok=None):
        tok = tok or self._peek()
        return ManifestError("%s:%d: %s" % (self._source, tok.line, message))

    def _expect(self, kind, value=None) -> Token:
        tok = self._next()
        if tok.kind != kind or (value is not None and tok.value != value):
            raise self._error("expected %s, found %r" % (value or kind, tok.value or tok.kind), tok)
        return tok

    def _skip_newlines(self):
        while self._peek().kind == "newline":
            self._pos += 1

    def _is(self, kind, value=None) -> bool:
        tok = self._peek()
        return tok.kind == kind and (value is None or tok.value == value)

    def parse_cask(self) -> tuple[str, list[Stanza]]:
        self._skip_newlines()
        self._expect("ident", "cask")
        token = self._expect("string").value
        self._expect("ident", "do")
        body = self.parse_body()
        self._skip_newlines()
        self._expect("eof")
        return token, body

    def parse_body(self) -> list[Stanza]:
        stanzas = []
        while True:
            self._skip_newlines()
            if self._is("ident", "end"):
                self._next()
                return stanzas
            if self._is("eof"):
                raise self._error("missing 'end'")
            stanzas.append(self.parse_stanza())

    def parse_stanza(self) -> Stanza:
        tok = self._expect("ident")
        stanza = Stanza(tok.value, tok.line)
        parens = self._is("punct", "(")
        if parens:
            self._next()
        while not (self._is("newline") or self._is("eof") or self._is("ident", "do")
                   or (parens and self._is("punct", ")"))):
            self.parse_argument(stanza)
            if self._is("punct", ","):
                self._next()
                self._skip_newlines()
            elif not (self._is("newline") or self._is("eof") or self._is("ident", "do")
                      or (parens and self._is("punct", ")"))):
                raise self._error("unexpected %r in %s" % (self._peek().value, stanza.name))
        if parens:
            self._expect("punct", ")")
        if self._is("ident", "do"):
            self._next()
            stanza.block = self.parse_body()
        return stanza

    def parse_argument(self, stanza: Stanza):
        if self._is("key"):
            key = self._next().value
            self._skip_newlines()
            stanza.kwargs[key] = self.parse_value()
            return
        value = self.parse_value()
        if self._is("arrow"):
            self._next()
            self._skip_newlines()
            stanza.kwargs[value] = self.parse_value()
        else:
            stanza.args.append(value)

    def parse_value(self):
        tok = self._next()
        if tok.kind in ("string", "symbol", "number"):
            return tok.value
        if tok.kind == "ident":
            return _LITERALS.get(tok.value, tok.value)
        if tok.kind == "punct" and tok.value == "[":
            items = []
            self._skip_newlines()
            while not self._is("punct", "]"):
                items.append(self.parse_value())
                self._skip_newlines()
                if not self._is("punct", "]"):
                    self._expect("punct", ",")
                    self._skip_newlines()
            self._next()
            return items
        if tok.kind == "punct" and tok.value == "{":
            items = {}
            self._skip_newlines()
            while not self._is("punct", "}"):
                if self._is("key"):
                    key = self._next().value
                else:
                    key = self.parse_value()
                    self._expect("arrow")
                self._skip_newlines()
                items[key] = self.parse_value()
                self._skip_newlines()
                if not self._is("punct", "}"):
                    self._expect("punct", ",")
                    self._skip_newlines()
            self._next()
            return items
        raise self._error("unexpected %r" % (tok.value or tok.kind), tok)


def _single(stanza: Stanza, source):
    if len(stanza.args) != 1 or not isinstance(stanza.args[0], str):
        raise ManifestError("%s:%d: %s takes exactly one string" % (source, stanza.line, stanza.name))
    return stanza.args[0]


def _postflight(stanza: Stanza, source) -> dict:
    commands = []
    for inner in stanza.block:
        if inner.name != "system_command":
            raise ManifestError("%s:%d: only system_command is supported in postflight, found %s"
                                % (source, inner.line, inner.name))
        args = inner.kwargs.get("args", [])
        if not isinstance(args, list) or not all(isinstance(a, str) for a in args):
            raise ManifestError("%s:%d: system_command args must be a list of strings" % (source, inner.line))
        commands.append({"path": _single(inner, source), "args": args})
    if len(commands) != 1:
        raise ManifestError("%s:%d: postflight must run exactly one system_command" % (source, stanza.line))
    return commands[0]


def parse_cask(text: str, source="cask") -> dict:
    '''
    Parse cask DSL text into a manifest dict. The result still has to be validated.
    '''
    token, stanzas = _Parser(tokenize(text, source), source).parse_cask()
    data = {"name": token}
    arch_map = None
    sha256 = None
    for stanza in stanzas:
        name = stanza.name
        if name == "arch":
            arch_map = dict(stanza.kwargs)
        elif name == "version":
            data["version"] = _single(stanza, source)
        elif name == "sha256":
            sha256 = dict(stanza.kwargs) if stanza.kwargs else _single(stanza, source)
        elif name == "url":
            data["urlTemplate"] = _single(stanza, source)
        elif name == "name":
            data.setdefault("displayName", _single(stanza, source))
        elif name == "desc":
            data["description"] = _single(stanza, source)
        elif name == "homepage":
            data["homepage"] = _single(stanza, source)
        elif name == "app":
            if "appBundleName" in data:
                raise ManifestError("%s:%d: only one app stanza is supported" % (source, stanza.line))
            data["appBundleName"] = stanza.args[0] if stanza.args else None
        elif name == "depends_on" and "macos" in stanza.kwargs:
            data["minimumOSVersion"] = stanza.kwargs["macos"]
        elif name == "livecheck" and stanza.block is not None:
            livecheck = {}
            for inner in stanza.block:
                if inner.name == "url":
                    livecheck["url"] = _single(inner, source)
                elif inner.name == "strategy":
                    livecheck["strategy"] = _single(inner, source).lstrip(":")
            data["livecheck"] = livecheck
        elif name == "postflight" and stanza.block is not None:
            data["postflightCommand"] = _postflight(stanza, source)
        else:
            logger.debug("%s:%d: ignoring %s stanza", source, stanza.line, name)

    if arch_map is None:
        arch_map = {arch: arch for arch in ARCHITECTURES}
    data["architectureMap"] = arch_map
    if isinstance(sha256, str):
        data["checksumMap"] = {arch: sha256 for arch in arch_map}
    elif isinstance(sha256, dict):
        data["checksumMap"] = sha256
    else:
        raise ManifestError("%s: missing sha256 stanza" % source)
    return data
