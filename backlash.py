import decimal
import enum
import logging
import re

logger = logging.getLogger(__name__)

TWO_PLACES = decimal.Decimal('0.01')

_TOKEN_RE = re.compile(r'''
    \s*(?:
        (?P<comment>\([^()]*\)|;.*)
      | (?P<letter>[A-Za-z])(?:\s*(?P<value>[-+]?(?:\d+(?:\.\d*)?|\.\d+)))?
      | (?P<percent>%)
    )''', re.VERBOSE)

COMMAND_LETTERS = 'GM'
STANDALONE_LETTERS = 'NT'
COORDINATE_LETTERS = 'ABCUVWXYZ'
# words of motion commands rendered with two decimals; the rest keep their text
FORMATTED_LETTERS = COORDINATE_LETTERS + 'F'

# commands whose remaining text is a free-form message
TEXT_COMMANDS = {'M117', 'M118'}

# motion-group codes other than G0/G1; they end the linear motion mode
OTHER_MOTION = {'G2', 'G3', 'G5', 'G33', 'G38.2', 'G38.3', 'G38.4', 'G38.5', 'G73', 'G76'} | \
               {'G{}'.format(n) for n in range(80, 90)}

# G codes that take axis words of their own; on any other G code (G17, G54,
# G90...) axis words belong to the move programmed on the same line
AXIS_WORD_CODES = {'G0', 'G1', 'G10', 'G28', 'G28.1', 'G29', 'G30', 'G30.1', 'G92'} | OTHER_MOTION


class GcodeError(Exception):
    def __init__(self, message, lineno=None):
        super().__init__(message)
        self.message = message
        self.lineno = lineno

    def __str__(self):
        if self.lineno is None:
            return self.message
        return 'line {}: {}'.format(self.lineno, self.message)


class ParseError(GcodeError):
    def __init__(self, message, lineno=None, column=None):
        super().__init__(message, lineno)
        self.column = column


class UnsupportedDirective(GcodeError):
    pass


def format_value(value):
    """Render a coordinate with exactly two decimals, rounding half away from zero."""
    value = decimal.Decimal(value).quantize(TWO_PLACES, rounding=decimal.ROUND_HALF_UP)
    if value == 0:
        value = value.copy_abs()
    return str(value)


def _code_name(letter, number):
    if number == number.to_integral_value():
        return '{}{}'.format(letter, int(number))
    return '{}{}'.format(letter, number.normalize())


class Gcode:
    @classmethod
    def parse(cls, lines):
        for lineno, line in enumerate(lines, 1):
            yield lineno, parse_line(line, lineno)

    def __init__(self, cmd, params=None, words=None, param_words=None):
        self.cmd = cmd
        self.params = params if params is not None else {}
        self.words = words if words is not None else []
        self.param_words = param_words if param_words is not None else {}

    @property
    def rawdata(self):
        return ' '.join(self.words + list(self.param_words.values()))

    def axis_letters(self):
        return [k for k in self.params if AxisKind.from_letter(k) is not None]

    def move_param(self, letter, other, lineno=None):
        if letter in other.params:
            raise ParseError('duplicate {} word'.format(letter), lineno)
        other.params[letter] = self.params.pop(letter)
        other.param_words[letter] = self.param_words.pop(letter)

    def _render_param(self, letter):
        if letter in FORMATTED_LETTERS:
            return letter + format_value(self.params[letter])
        if letter in self.param_words:
            return self.param_words[letter]
        return letter + str(self.params[letter])

    def render(self):
        parts = [self.cmd] if self.cmd is not None else []
        parts.extend(self._render_param(k) for k in self.params)
        return ' '.join(parts)

    def __repr__(self):
        return "Gcode('{}', '{}', '{}')".format(self.cmd, self.params, self.rawdata)

    def __str__(self):
        return self.rawdata if self.words or self.param_words else self.render()


def _tokenize(line, lineno):
    pos = 0
    while pos < len(line):
        if line[pos:].isspace():
            return
        m = _TOKEN_RE.match(line, pos)
        if m is None:
            column = pos + len(line[pos:]) - len(line[pos:].lstrip())
            if line[column] == '(':
                raise ParseError('unterminated comment', lineno, column + 1)
            raise ParseError('unexpected {!r}'.format(line[column]), lineno, column + 1)
        pos = m.end()
        yield m


def parse_line(line, lineno=None):
    """Split one line of G-code into commands and pass-through tokens.

    Parameter words attach to the closest preceding G or M word. Words that
    appear before any command are grouped into a Gcode with ``cmd=None``.
    The text after M117/M118 is kept as a raw message.
    """
    line = line.rstrip('\r\n')
    codes = []
    current = None
    for m in _tokenize(line, lineno):
        text = m.group().strip()
        if m.group('letter') is None:
            codes.append(Gcode(None, words=[text]))
            continue

        letter = m.group('letter').upper()
        if m.group('value') is None:
            # bare flag words such as "G28 X Y" are only valid as parameters
            if letter in COMMAND_LETTERS or letter in STANDALONE_LETTERS:
                raise ParseError('{} without a number'.format(letter), lineno, m.start('letter') + 1)
            value = None
        else:
            value = decimal.Decimal(m.group('value'))
        if letter in COMMAND_LETTERS:
            current = Gcode(_code_name(letter, value), words=[text])
            codes.append(current)
            if current.cmd in TEXT_COMMANDS:
                message, sep, comment = line[m.end():].partition(';')
                if message.strip():
                    current.words.append(message.strip())
                if sep:
                    codes.append(Gcode(None, words=[(sep + comment).rstrip()]))
                break
        elif letter in STANDALONE_LETTERS:
            codes.append(Gcode(None, words=[text]))
        else:
            if current is None:
                current = Gcode(None)
                codes.append(current)
            if letter in current.params:
                raise ParseError('duplicate {} word'.format(letter), lineno, m.start('letter') + 1)
            current.params[letter] = value
            current.param_words[letter] = text
    return codes


class AxisKind(enum.Enum):
    X = 'X'
    Y = 'Y'
    Z = 'Z'
    A = 'A'

    @classmethod
    def from_letter(cls, letter):
        try:
            return cls(letter)
        except ValueError:
            return None


class Direction(enum.Enum):
    UNKNOWN = 'unknown'
    POSITIVE = 'positive'
    NEGATIVE = 'negative'

    @classmethod
    def of(cls, delta):
        if delta > 0:
            return cls.POSITIVE
        if delta < 0:
            return cls.NEGATIVE
        return cls.UNKNOWN

    @property
    def opposite(self):
        if self is Direction.POSITIVE:
            return Direction.NEGATIVE
        if self is Direction.NEGATIVE:
            return Direction.POSITIVE
        raise ValueError('unknown direction has no opposite')

    def signed(self, magnitude):
        if self is Direction.POSITIVE:
            return magnitude
        if self is Direction.NEGATIVE:
            return -magnitude
        raise ValueError('unknown direction has no sign')


class Axis:
    def __init__(self, lash=0.0, correction=1.0):
        lash, correction = decimal.Decimal(str(lash)), decimal.Decimal(str(correction))
        if not (lash.is_finite() and correction.is_finite()):
            raise ValueError('lash and correction must be finite, got {} and {}'.format(lash, correction))
        lash = lash * correction
        if lash < 0:
            logger.warning('negative lash %s treated as no compensation', lash)
            lash = decimal.Decimal(0)
        self.lash = lash
        self.reset()

    def reset(self):
        self.direction = Direction.UNKNOWN
        self.pos = decimal.Decimal(0)

    def calc_direction(self, newpos):
        if newpos == self.pos:
            return self.direction
        return Direction.of(newpos - self.pos)

    def is_same_direction(self, newpos):
        if self.direction is Direction.UNKNOWN or newpos == self.pos:
            return True
        return self.calc_direction(newpos) is self.direction

    def record_motion(self, newpos):
        self.pos = newpos

    def __repr__(self):
        return "Axis(lash={}, pos={}, direction={})".format(self.lash, self.pos, self.direction.value)

    def __str__(self):
        return self.__repr__()


def make_axes(x=0.0, y=0.0, z=0.0, a=0.0, correction=1.0):
    lashes = {AxisKind.X: x, AxisKind.Y: y, AxisKind.Z: z, AxisKind.A: a}
    return {kind: Axis(lash=lashes[kind], correction=correction) for kind in AxisKind}


def log_axes(axes):
    for kind in axes:
        logger.info('%s: %s', kind.value, axes[kind])


class ModalState:
    def __init__(self):
        self.absolute = True
        self.motion = None

    def set_absolute(self):
        self.absolute = True

    def set_incremental(self):
        self.absolute = False

    def is_absolute(self):
        return self.absolute


def compensate_move(axes, modal, gcode, code):
    """Track one linear move and build the commands that take up backlash.

    Updates the ideal position and direction of every axis named in
    ``gcode`` and returns the synthetic commands to emit before it: an
    incremental ``code`` move of +-lash for each reversing axis, wrapped
    in G91/G90 when the machine is in absolute mode. An empty list means
    the move needs no compensation.
    """
    nudge = {}
    for letter, value in gcode.params.items():
        kind = AxisKind.from_letter(letter)
        if kind is None:
            continue
        axis = axes[kind]
        target = value if modal.is_absolute() else axis.pos + value

        if axis.lash == 0:
            axis.record_motion(target)
            continue

        if not axis.is_same_direction(target):
            axis.direction = axis.direction.opposite
            nudge[letter] = axis.direction.signed(axis.lash)
            logger.debug('%s reversed to %s at %s', letter, axis.direction.value, target)
        elif axis.direction is Direction.UNKNOWN:
            axis.direction = axis.calc_direction(target)
        axis.record_motion(target)

    if not nudge:
        return []

    commands = [Gcode(code, nudge)]
    if modal.is_absolute():
        commands = [Gcode('G91')] + commands + [Gcode('G90')]
    return commands


class LashGuard:
    """Rewrites a G-code stream, inserting a nudge before every axis reversal."""

    def __init__(self, axes):
        self.axes = axes
        self.modal = ModalState()

    def reset_axes(self):
        for axis in self.axes.values():
            axis.reset()

    def compensate(self, lines):
        for lineno, codes in Gcode.parse(lines):
            for out in self.compensate_codes(codes, lineno):
                yield out

    def compensate_line(self, line, lineno=None):
        return self.compensate_codes(parse_line(line, lineno), lineno)

    def compensate_codes(self, codes, lineno=None):
        """Return the output lines for the commands of one input line."""
        output = []
        pending = []
        for gcode in self._regroup(codes, lineno):
            code = self._motion_code(gcode)
            if code is None:
                self._apply(gcode, lineno)
                pending.append(str(gcode))
                continue

            for letter, value in gcode.params.items():
                if value is None:
                    raise ParseError('{} without a number in {} move'.format(letter, code), lineno)
            self.modal.motion = code
            commands = compensate_move(self.axes, self.modal, gcode, code)
            if commands:
                # earlier commands on this line run before the nudge
                if pending:
                    output.append(' '.join(pending))
                    pending = []
                output.extend(str(c) for c in commands)
            pending.append(gcode.render())
        output.append(' '.join(pending))
        return output

    def _regroup(self, codes, lineno):
        """Hand axis words written after G17, G54 and the like to the line's move.

        The move is the line's motion command, else its word group without a command,
        else a new group continuing the active G0/G1 mode. Without any of
        these the words cannot be tracked and the line is rejected.
        """
        target = next((c for c in codes if c.cmd in ('G0', 'G1') or c.cmd in OTHER_MOTION), None)
        if target is None:
            target = next((c for c in codes if c.cmd is None and c.params), None)
        regrouped = []
        for gcode in codes:
            regrouped.append(gcode)
            if gcode.cmd is None or gcode.cmd in AXIS_WORD_CODES or not gcode.cmd.startswith('G'):
                continue
            letters = gcode.axis_letters()
            if not letters:
                continue
            if target is None:
                if self.modal.motion is None:
                    raise UnsupportedDirective('axis words on {} without a G0/G1 move'.format(gcode.cmd), lineno)
                target = Gcode(None)
                regrouped.append(target)
            for letter in letters:
                gcode.move_param(letter, target, lineno)
        return regrouped

    def _motion_code(self, gcode):
        if gcode.cmd in ('G0', 'G1'):
            return gcode.cmd
        if gcode.cmd is None and self.modal.motion is not None and gcode.axis_letters():
            return self.modal.motion
        return None

    def _apply(self, gcode, lineno):
        cmd = gcode.cmd
        if cmd == 'G28':
            logger.debug('homing at line %s, axes reset', lineno)
            self.reset_axes()
        elif cmd == 'G10':
            if gcode.params.get('L') != 20:
                raise UnsupportedDirective('{} is not supported, only G10 L20'.format(gcode.rawdata), lineno)
            logger.debug('offset reset at line %s, axes reset', lineno)
            self.reset_axes()
        elif cmd == 'G92':
            self._set_positions(gcode, lineno)
        elif cmd is not None and cmd.startswith('G92.'):
            raise UnsupportedDirective('{} is not supported'.format(cmd), lineno)
        elif cmd in ('G90', 'G91'):
            if gcode.params:
                raise UnsupportedDirective('{} with parameters is not supported'.format(gcode.rawdata), lineno)
            if cmd == 'G90':
                self.modal.set_absolute()
            else:
                self.modal.set_incremental()
        elif cmd in OTHER_MOTION:
            self.modal.motion = None

    def _set_positions(self, gcode, lineno):
        if not gcode.params:
            raise UnsupportedDirective('G92 without parameters is not supported', lineno)
        for letter, value in gcode.params.items():
            kind = AxisKind.from_letter(letter)
            if kind is None:
                continue
            if value is None:
                raise UnsupportedDirective('G92 {} without a number is not supported'.format(letter), lineno)
            self.axes[kind].record_motion(value)
            logger.debug('%s position set to %s at line %s', letter, value, lineno)
