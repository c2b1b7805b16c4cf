import argparse
import contextlib
import logging
import math
import sys

from backlash import GcodeError, LashGuard, log_axes, make_axes

logger = logging.getLogger('lashguard')


def finite_float(value):
    number = float(value)
    if not math.isfinite(number):
        raise argparse.ArgumentTypeError('{!r} is not a finite number'.format(value))
    return number


def build_parser():
    parser = argparse.ArgumentParser(description='Backlash Compensator',
                                     usage='%(prog)s -x 0.6 -y 0.6 -z 0 -a 0 -i sample.gcode -o out.gcode')
    parser.add_argument('-x', '--x-dist', help='X_DISTANCE_MM', type=finite_float, required=True)
    parser.add_argument('-y', '--y-dist', help='Y_DISTANCE_MM', type=finite_float, required=True)
    parser.add_argument('-z', '--z-dist', help='Z_DISTANCE_MM', type=finite_float, required=True)
    parser.add_argument('-a', '--a-dist', help='A_DISTANCE_DEG', type=finite_float, required=True)
    parser.add_argument('-c', '--correction', help='CORRECTION', type=finite_float, default=1.0)
    parser.add_argument('-i', '--input', help='INPUT G-code, stdin when omitted', type=str)
    parser.add_argument('-o', '--output', help='OUTPUT G-code, stdout when omitted', type=str)
    parser.add_argument('-v', '--verbose', help='debug logging', action='store_true')
    return parser


def main(argv=None):
    args = build_parser().parse_args(argv)
    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.INFO,
                        format='%(levelname)s %(name)s: %(message)s')

    axes = make_axes(args.x_dist, args.y_dist, args.z_dist, args.a_dist, correction=args.correction)
    log_axes(axes)

    with contextlib.ExitStack() as stack:
        try:
            gcode_data = stack.enter_context(open(args.input)) if args.input else sys.stdin
            output = stack.enter_context(open(args.output, 'w')) if args.output else sys.stdout
        except OSError as e:
            logger.error('cannot open %s: %s', e.filename, e.strerror)
            return 2

        try:
            for line in LashGuard(axes).compensate(gcode_data):
                output.write(line + '\n')
        except GcodeError as e:
            logger.error('%s', e)
            return 1
    return 0


if __name__ == '__main__':
    sys.exit(main())
