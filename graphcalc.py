import getopt
import logging
import math
import sys
from enum import Enum
from types import MappingProxyType

import matplotlib.pyplot as plt
import numpy as np
from matplotlib.ticker import FuncFormatter

logger = logging.getLogger(__name__)


##############
## Settings ##
##############

DEFAULT_VAR_NAME = 'x'
DEFAULT_X_RANGE = (-10, 10)     # x axis shown by PLOT
SAMPLE_RANGE = (-100, 100)      # x values sampled for every function row
DEFAULT_STEP = 0.1
TRIG_STEP = math.pi / 18
MAX_DEPTH = 400                 # deeper trees would overflow the stack in evaluate()

USAGE = '''usage: graphcalc [options]

  -h, --help   - Show help information
  -d, --debug  - Dump debug info to the log
'''


################
## Normalizer ##
################

# order matters: the nth-root glyph contains the radical glyph
PRETTY_GLYPHS = (
    ('ⁿ√x', '@'),
    ('√', 'sqrt'),
    ('×', '*'),
    ('÷', '/'),
)


def normalize(raw: str) -> str:
    """
    Strips whitespace and rewrites the "pretty" glyphs a keypad produces into
    the ASCII the parser understands. Nothing is validated here.
    """
    text = ''.join(raw.split())
    for glyph, replacement in PRETTY_GLYPHS:
        text = text.replace(glyph, replacement)
    return text


####################
## Scanner cursor ##
####################

class Cursor():
    """Single character lookahead over normalized text, alive for one parse."""

    def __init__(self, text: str):
        self.text = text
        self.index = 0

    @property
    def curr_char(self) -> str | None:
        """
        Retrieves the current character, or None past the end.
        """
        return self.text[self.index] if self.index < len(self.text) else None

    @property
    def at_end(self) -> bool:
        return self.index >= len(self.text)

    def advance(self):
        self.index += int(self.index < len(self.text))

    def consume(self, expected: str) -> bool:
        """Advances over `expected` if it is the current character."""
        if self.curr_char == expected:
            self.advance()
            return True
        return False

    def is_number(self) -> bool:
        return self.curr_char is not None and (self.curr_char.isdigit() or self.curr_char == '.')

    def is_alpha(self) -> bool:
        return self.curr_char is not None and self.curr_char.isalpha()


#######################
## Builtin functions ##
#######################

# numpy ufuncs return nan/inf on domain errors instead of raising
BUILTIN_FUNCTIONS = MappingProxyType({
    'sin': np.sin,
    'cos': np.cos,
    'tan': np.tan,
    'asin': np.arcsin,
    'acos': np.arccos,
    'atan': np.arctan,
    'sqrt': np.sqrt,
    'log': np.log,
    'exp': np.exp,
    'sec': lambda v: np.divide(1.0, np.cos(v)),
    'csc': lambda v: np.divide(1.0, np.sin(v)),
    'cot': lambda v: np.divide(1.0, np.tan(v)),
})


#####################
## Expression tree ##
#####################

class OpKind(Enum):
    ADD = '+'
    SUB = '-'
    MUL = '*'
    DIV = '/'
    MOD = '%'
    POW = '^'
    NTH_ROOT = '@'


class Node():
    """Base class for all nodes of a compiled expression tree."""

    # levels of evaluate() calls below and including this node
    depth = 1

    def evaluate(self, env: dict[str, float]) -> float:
        raise NotImplementedError

    def __repr__(self) -> str:
        return self.__str__()


class Constant(Node):
    """A numeric literal."""

    def __init__(self, value: float):
        self.value = value

    def evaluate(self, env: dict[str, float]) -> float:
        return self.value

    def __str__(self) -> str:
        return f'Constant({self.value})'


class BinOp(Node):
    """A binary operation (+, -, *, /, %, ^, @)."""

    def __init__(self, kind: OpKind, left: Node, right: Node):
        self.kind = kind
        self.left = left
        self.right = right
        self.depth = 1 + max(left.depth, right.depth)

    def evaluate(self, env: dict[str, float]) -> float:
        left = self.left.evaluate(env)
        right = self.right.evaluate(env)
        match self.kind:
            case OpKind.ADD:
                return np.add(left, right)
            case OpKind.SUB:
                return np.subtract(left, right)
            case OpKind.MUL:
                return np.multiply(left, right)
            case OpKind.DIV:
                return np.divide(left, right)
            case OpKind.MOD:
                # sign follows the dividend
                return np.fmod(left, right)
            case OpKind.POW:
                return np.power(left, right)
            case OpKind.NTH_ROOT:
                return np.power(left, np.divide(1.0, right))
        raise ValueError(f'Invalid operator {self.kind}')

    def __str__(self) -> str:
        return f'BinOp({self.left} {self.kind.value} {self.right})'


class Negate(Node):
    """Unary minus."""

    def __init__(self, child: Node):
        self.child = child
        self.depth = 1 + child.depth

    def evaluate(self, env: dict[str, float]) -> float:
        return -1.0 * self.child.evaluate(env)

    def __str__(self) -> str:
        return f'Negate({self.child})'


class FuncCall(Node):
    """A call of one of the builtin functions."""

    def __init__(self, name: str, function, arg: Node):
        self.name = name
        self.function = function
        self.arg = arg
        self.depth = 1 + arg.depth

    def evaluate(self, env: dict[str, float]) -> float:
        return self.function(self.arg.evaluate(env))

    def __str__(self) -> str:
        return f'FuncCall({self.name}, {self.arg})'


class VariableRef(Node):
    """
    A free variable, looked up in the environment every time the tree is
    evaluated. An unbound name evaluates to nan.
    """

    def __init__(self, name: str):
        self.name = name

    def evaluate(self, env: dict[str, float]) -> float:
        if env is None or self.name not in env:
            return math.nan
        return float(env[self.name])

    def __str__(self) -> str:
        return f'VariableRef({self.name})'


class Expression():
    """
    The compiled result of one parse. Holds a reference to the environment it
    was parsed with (never a copy), so callers can change variable values
    between calls to `evaluate` without parsing again.
    """

    def __init__(self, root: Node, source: str, env: dict[str, float] | None = None):
        self.root = root
        self.source = source
        self.env = env if env is not None else {}

    def evaluate(self, env: dict[str, float] | None = None) -> float:
        with np.errstate(all='ignore'):
            return float(self.root.evaluate(self.env if env is None else env))

    def __str__(self) -> str:
        return f'Expression({self.root})'

    def __repr__(self) -> str:
        return self.__str__()


############
## Parser ##
############

class Parser():
    """
    Recursive descent parser. Precedence tiers, lowest first:
        1) addition, subtraction
        2) multiplication, division, modulo
        3) exponentiation, nth roots
        4) unary signs, groups, numbers, functions and variables
    Every binary operator is left associative, "^" included.
    """

    def __init__(self):
        self.functions = BUILTIN_FUNCTIONS

    def parse(self, raw: str, env: dict[str, float] | None = None) -> Expression:
        """
        Compiles `raw` into an Expression bound to `env`. Raises ParseError if
        the text is not a complete expression.
        """
        cursor = Cursor(normalize(raw))
        logger.debug('Parsing "%s"', cursor.text)
        try:
            root = self._sum(cursor)
        except RecursionError:
            raise ParseError('Expression is nested too deeply', cursor.text, cursor.index)
        if not cursor.at_end:
            raise ParseError(f'Unexpected "{cursor.curr_char}"', cursor.text, cursor.index)
        if root.depth > MAX_DEPTH:
            raise ParseError('Expression is nested too deeply', cursor.text, 0, len(cursor.text))
        return Expression(root, raw, env)

    def _sum(self, cursor: Cursor) -> Node:
        """sum = product { ("+" | "-") product }"""
        node = self._product(cursor)
        while True:
            if cursor.consume('+'):
                node = BinOp(OpKind.ADD, node, self._product(cursor))
            elif cursor.consume('-'):
                node = BinOp(OpKind.SUB, node, self._product(cursor))
            else:
                return node

    def _product(self, cursor: Cursor) -> Node:
        """product = power { ("*" | "/" | "%") power }"""
        node = self._power(cursor)
        while True:
            if cursor.consume('*'):
                node = BinOp(OpKind.MUL, node, self._power(cursor))
            elif cursor.consume('/'):
                node = BinOp(OpKind.DIV, node, self._power(cursor))
            elif cursor.consume('%'):
                node = BinOp(OpKind.MOD, node, self._power(cursor))
            else:
                return node

    def _power(self, cursor: Cursor) -> Node:
        """power = term { ("^" | "@") term }"""
        node = self._term(cursor)
        while True:
            if cursor.consume('^'):
                node = BinOp(OpKind.POW, node, self._term(cursor))
            elif cursor.consume('@'):
                node = BinOp(OpKind.NTH_ROOT, node, self._term(cursor))
            else:
                return node

    def _term(self, cursor: Cursor) -> Node:
        """term = ("+" | "-") term | "(" sum [")"] | NUMBER | WORD term"""
        start = cursor.index

        if cursor.consume('+'):
            return self._term(cursor)
        if cursor.consume('-'):
            return Negate(self._term(cursor))

        if cursor.consume('('):
            node = self._sum(cursor)
            cursor.consume(')')     # an unclosed group is accepted
            return node

        if cursor.is_number():
            while cursor.is_number():
                cursor.advance()
            text = cursor.text[start:cursor.index]
            try:
                return Constant(float(text))
            except ValueError:
                raise ParseError('Invalid number', cursor.text, start, len(text))

        if cursor.is_alpha():
            while cursor.is_alpha():
                cursor.advance()
            name = cursor.text[start:cursor.index]
            function = self.functions.get(name)
            if function is not None:
                return FuncCall(name, function, self._term(cursor))
            # a variable still swallows a following number or group, which
            # is thrown away
            if cursor.is_number() or cursor.curr_char == '(':
                self._term(cursor)
            return VariableRef(name)

        if cursor.at_end:
            raise ParseError('Unexpected end of input', cursor.text, cursor.index)
        raise ParseError(f'Unexpected "{cursor.curr_char}"', cursor.text, cursor.index)


_default_parser = Parser()


def parse(raw: str, env: dict[str, float] | None = None) -> Expression:
    return _default_parser.parse(raw, env)


################
## Exceptions ##
################

class ParseError(Exception):
    def __init__(self, message: str, text: str, index: int, length: int = 1):
        self.message = message
        self.text = text
        self.index = index
        self.length = length

        logger.debug('Parse failed at %d: %s', index, message)
        msg = f'''
ERROR: {self.text}
       {self._get_error_highlight()}
{self.message}'''
        super().__init__(msg)

    def _get_error_highlight(self) -> str:
        return ' ' * self.index + '^' * self.length


#######################
## Compute and graph ##
#######################

def format_number(value: float) -> str:
    # past 1e16 the integral digits are float noise
    if value.is_integer() and abs(value) < 1e16:
        return str(int(value))
    return repr(value)


def compute(raw: str, parser: Parser | None = None) -> str:
    """
    Evaluates `raw` once, with no variables bound, and returns the text a
    calculator display shows: "Error" when the input does not parse,
    "Undefined" when the result is nan or infinite, otherwise the number.
    """
    parser = parser or _default_parser
    try:
        result = parser.parse(raw).evaluate()
    except ParseError:
        return 'Error'
    if not math.isfinite(result):
        return 'Undefined'
    return format_number(result)


def is_trig(raw: str) -> bool:
    text = raw.lower()
    return 'sin' in text or 'cos' in text or 'tan' in text


def sample(expression: Expression, var_name: str = DEFAULT_VAR_NAME,
           x_min: float = SAMPLE_RANGE[0], x_max: float = SAMPLE_RANGE[1],
           step: float | None = None) -> tuple[np.ndarray, np.ndarray]:
    """
    Evaluates `expression` across [x_min, x_max]. For every sample the value
    is written into the expression's environment under `var_name` first, and
    the tree is evaluated afterwards.

    The step defaults to pi/18 for trigonometric input and 0.1 otherwise.
    """
    if step is None:
        step = TRIG_STEP if is_trig(expression.source) else DEFAULT_STEP
    if step <= 0:
        raise ValueError('step must be positive')

    count = max(int(math.floor((x_max - x_min) / step + 1e-9)) + 1, 0)
    xs = x_min + step * np.arange(count)
    ys = np.empty(count)
    env = expression.env
    for i, x in enumerate(xs):
        env[var_name] = float(x)
        ys[i] = expression.evaluate()

    logger.debug('Sampled "%s" at %d points in [%s, %s]', expression.source, count, x_min, x_max)
    return xs, ys


def format_tick(value: float, pos=None) -> str:
    """Axis labels show whole numbers only."""
    return str(int(value)) if float(value).is_integer() else ''


class GraphableFunction():
    """One user entered function row, e.g. y0=x^2."""

    def __init__(self, index: int, var_name: str = DEFAULT_VAR_NAME):
        self.index = index
        self.var_name = var_name
        self.raw_input = ''
        self.checked = True
        self.expression: Expression | None = None
        self.data: tuple[np.ndarray, np.ndarray] | None = None

    @property
    def label(self) -> str:
        return f'y{self.index}='

    def compile(self, parser: Parser, raw: str) -> tuple[np.ndarray, np.ndarray]:
        """Parses `raw` against a fresh environment and samples it."""
        env = {}
        self.expression = parser.parse(raw, env)
        self.raw_input = raw
        self.data = sample(self.expression, self.var_name)
        return self.data

    def __str__(self) -> str:
        mark = 'x' if self.checked else ' '
        return f'[{mark}] {self.label}{self.raw_input}'


################
## Calculator ##
################

class Calculator():
    def __init__(self):
        self.parser = Parser()
        self.functions: list[GraphableFunction] = []
        self.commands = {
            'EXIT': self._exit,
            'FUNC': self._func,
            'TOGGLE': self._toggle,
            'LIST': self._list,
            'PLOT': self._plot,
        }

    def _exit(self, args: str):
        """Syntax: EXIT"""
        raise SystemExit()

    def _func(self, args: str):
        """Syntax: FUNC <expression in x>

        Adds a function row, compiled once and sampled over the default range.
        """
        if not args:
            raise Exception('Syntax error. Correct usage:\n  FUNC <expression>')
        func = GraphableFunction(len(self.functions))
        func.compile(self.parser, args)
        self.functions.append(func)
        print(func)

    def _toggle(self, args: str):
        """Syntax: TOGGLE <index>"""
        try:
            index = int(args)
            if index < 0:
                raise IndexError
            func = self.functions[index]
        except (ValueError, IndexError):
            raise Exception(f'"{args}" is not a function index. Correct usage:'
                '\n  TOGGLE <index>')
        func.checked = not func.checked
        print(func)

    def _list(self, args: str):
        """Syntax: LIST"""
        for func in self.functions:
            print(func)

    def _plot(self, args: str):
        """Syntax: PLOT [<x_from=-10>, <x_to=10>]

        Plots every checked function row using matplotlib without blocking
        the main thread.
        """
        x_min, x_max = DEFAULT_X_RANGE
        parts = [arg.strip() for arg in args.split(',')] if args else []

        try:
            if len(parts) > 0:
                x_min = float(parts[0])
            if len(parts) > 1:
                x_max = float(parts[1])
            if len(parts) > 2 or x_min >= x_max:
                raise ValueError
        except ValueError:
            raise Exception('Syntax error. Correct usage:'
                '\n  PLOT [<x_from=-10>, <x_to=10>]')

        visible = [func for func in self.functions if func.checked and func.data is not None]
        if not visible:
            raise Exception('Nothing to plot. Add a function with FUNC <expression>')

        shown = []
        fig, ax = plt.subplots()
        for func in visible:
            xs, ys = func.data
            # gaps in the curve instead of spikes to infinity
            ax.plot(xs, np.where(np.isfinite(ys), ys, np.nan), label=f'{func.label}{func.raw_input}')
            shown.append(ys[(xs >= x_min) & (xs <= x_max) & np.isfinite(ys)])

        ax.set_xlim(x_min, x_max)
        # scale y to the visible part of the curves only
        shown = np.concatenate(shown)
        if shown.size:
            y_min, y_max = float(shown.min()), float(shown.max())
            pad = (y_max - y_min) * 0.05 or 1.0
            ax.set_ylim(y_min - pad, y_max + pad)
        ax.xaxis.set_major_formatter(FuncFormatter(format_tick))
        ax.yaxis.set_major_formatter(FuncFormatter(format_tick))
        ax.set_xlabel(DEFAULT_VAR_NAME)
        ax.set_title(f'{DEFAULT_VAR_NAME} ∈ [{x_min}, {x_max}]')
        ax.grid(True)
        ax.legend()
        plt.show(block=False)

    def run(self):
        """The read-eval-print loop.

        Commands are identified by the first word of the line, anything else
        is computed directly.
        """
        try:
            while True:
                try:
                    line = input('\n>>> ').strip()
                    if not line:
                        continue

                    for cmd, handler in self.commands.items():
                        if line.startswith(cmd):
                            handler(line[len(cmd):].strip())
                            break
                    else:
                        print(compute(line, self.parser))
                except (SystemExit, EOFError):
                    break
                except Exception as e:
                    print(e)
        except KeyboardInterrupt:
            pass


################
## Entrypoint ##
################

def _configure_logging(debug: bool):
    # don't stack handlers when called twice
    if not logger.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter('[graphcalc] [%(levelname)s] %(message)s'))
        logger.addHandler(handler)
    logger.setLevel(logging.DEBUG if debug else logging.INFO)
    logger.propagate = False


def main(argv: list[str] | None = None) -> int:
    try:
        opts, _ = getopt.getopt(sys.argv[1:] if argv is None else argv, 'hd', ['help', 'debug'])
    except getopt.GetoptError as e:
        print(e, file=sys.stderr)
        print(USAGE, file=sys.stderr)
        return 2

    if ('--help', '') in opts or ('-h', '') in opts:
        print(USAGE)
        return 0

    _configure_logging(('--debug', '') in opts or ('-d', '') in opts)
    Calculator().run()
    return 0


if __name__ == '__main__':
    sys.exit(main())
