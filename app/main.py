import math

from flask import Flask
from flask import abort, render_template, request, Response

from backlash import GcodeError, LashGuard, make_axes

app = Flask(__name__)
app.config['MAX_CONTENT_LENGTH'] = 2**10 * 2**10 * 2**10 * 1  # 1 GB
app.config.from_prefixed_env('LASHGUARD')

LASH_FIELDS = ('x_dist', 'y_dist', 'z_dist', 'a_dist')


def _form_float(name, default):
    raw = request.form.get(name, '').strip() or default
    try:
        value = float(raw)
    except ValueError:
        abort(400, description='{} must be a number'.format(name))
    if not math.isfinite(value):
        abort(400, description='{} must be finite'.format(name))
    return value


@app.route('/')
def hello_world():
    return render_template('index.html')


@app.route('/compensate', methods=['POST'])
def compensate():
    file = request.files.get('gcode')
    if file is None or not file.filename:
        abort(400, description='no G-code file uploaded')
    fname = file.filename.rsplit('.', 1)[0]
    newfname = f'{fname}_nolash.gcode'

    correction = _form_float('correction', '1')
    x, y, z, a = (_form_float(name, '0') for name in LASH_FIELDS)
    axes = make_axes(x, y, z, a, correction=correction)

    try:
        gcodes = [l.decode('utf8') for l in file.stream]
    except UnicodeDecodeError:
        abort(400, description='G-code must be UTF-8 text')

    # compensated in full before responding; a fatal line returns no file
    try:
        body = ''.join(line + '\n' for line in LashGuard(axes).compensate(gcodes))
    except GcodeError as e:
        app.logger.warning('rejected %s: %s', file.filename, e)
        return Response(str(e) + '\n', status=422, mimetype='text/plain')

    resp = Response(body, content_type='application/octet-stream')
    resp.headers["Content-Disposition"] = f"attachment; filename={newfname}"
    return resp


if __name__ == '__main__':
    app.run(host='0.0.0.0', debug=True, port=80)
