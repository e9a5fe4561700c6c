from flask import Flask, Blueprint, request, jsonify, current_app
from flask.cli import with_appcontext
from flask_cors import CORS
from flask_login import LoginManager, login_required, current_user
import json, jwt, os, hashlib, hmac, base64, dataclasses, atexit, logging
import click
from server_schema import db, User, Note, NoteRecipient, MediaFile
from datetime import datetime, timedelta, timezone
from dateutil.parser import parse, ParserError
from errors import LegacyNoteError, ValidationError, MutationRejected, DeliveryTransientError, DeliveryRejected
from delivery_scheduler import DeliveryScheduler
from mailer import MailSender
import lifecycle, mailer, note_cipher, share_link

logger = logging.getLogger(__name__)

DEFAULT_CONFIG = {
    'SQLALCHEMY_DATABASE_URI': 'sqlite:///legacynote.db',
    'SECRET_JWT_KEY': None,
    'JWT_EXPIRATION_MINUTES': 30,
    'ENCRYPTION_KEY': None,
    'FRONTEND_URL': 'http://localhost:5173',
    'MAIL_SERVER': 'smtp.gmail.com',
    'MAIL_PORT': 465,
    'MAIL_USE_SSL': True,
    'MAIL_USERNAME': None,
    'MAIL_PASSWORD': None,
    'MAIL_SENDER': None,
    'MAIL_TIMEOUT_SECONDS': 10,
    'DELIVERY_INTERVAL_SECONDS': 60,
    'DELIVERY_CLAIM_LEASE_SECONDS': 600,
    'SCHEDULER_ENABLED': True,
}

PASSWORD_HASH_ITERATIONS = 100000

api = Blueprint('api', __name__)
login_manager = LoginManager()

def to_json_value(value):
    if isinstance(value, datetime):
        return value.replace(tzinfo=timezone.utc).isoformat()
    if isinstance(value, dict):
        return {key: to_json_value(item) for key, item in value.items()}
    if isinstance(value, list):
        return [to_json_value(item) for item in value]
    return value

def dataclass_obj_to_dict(obj):
    return to_json_value(dataclasses.asdict(obj))

def note_to_dict(note, content=None):
    note_obj = dataclass_obj_to_dict(note)
    note_obj['is_delivered'] = note.is_delivered
    note_obj['state'] = lifecycle.delivery_state(note, lifecycle.utcnow()).name
    note_obj['recipients'] = [dataclass_obj_to_dict(recipient) for recipient in note.recipients]
    note_obj['media_files'] = [dataclass_obj_to_dict(media_file) for media_file in note.media_files]
    if content is not None:
        note_obj['content'] = content
    return note_obj

def shared_note_to_dict(note, content):
    # What a link holder gets to see: no sharing credentials, no recipient list
    return to_json_value({
        'id': note.id,
        'title': note.title,
        'content': content,
        'sender_name': note.owner.name if note.owner else None,
        'delivery_date': note.delivery_date,
        'delivered_at': note.delivered_at,
        'media_files': [dataclasses.asdict(media_file) for media_file in note.media_files],
    })

def get_field(data, *names, default=None):
    # The web client historically sent camelCase keys
    for name in names:
        if name in data:
            return data[name]
    return default

def parse_delivery_date(value):
    if not value:
        raise ValidationError('delivery_date', 'is required')
    try:
        delivery_date = parse(value) if isinstance(value, str) else value
    except (ParserError, ValueError, OverflowError):
        raise ValidationError('delivery_date', 'invalid date format')
    if not isinstance(delivery_date, datetime):
        raise ValidationError('delivery_date', 'invalid date format')
    return lifecycle.to_naive_utc(delivery_date)

def parse_title(value):
    if not isinstance(value, str) or not value.strip():
        raise ValidationError('title', 'is required')
    if len(value.strip()) > 100:
        raise ValidationError('title', 'cannot be more than 100 characters')
    return value.strip()

def parse_content(value):
    if not isinstance(value, str) or not value.strip():
        raise ValidationError('content', 'is required')
    return value.strip()

def parse_bool(value, name):
    if not isinstance(value, bool):
        raise ValidationError(name, 'must be true or false')
    return value

def parse_media_files(values):
    if not isinstance(values, list):
        raise ValidationError('media_files', 'must be a list')
    media_files = []
    for position, value in enumerate(values):
        if not isinstance(value, dict):
            raise ValidationError('media_files', 'each file must be an object')
        file_name = get_field(value, 'file_name', 'fileName')
        file_path = get_field(value, 'file_path', 'filePath', 'url')
        if not file_name or not file_path:
            raise ValidationError('media_files', 'file_name and file_path are required')
        file_size = get_field(value, 'file_size', 'fileSize')
        if file_size is not None and (not isinstance(file_size, int) or file_size < 0):
            raise ValidationError('media_files', 'file_size must be a positive integer')
        media_files.append(MediaFile(position=position, file_name=file_name, file_path=file_path,
                                     file_type=get_field(value, 'file_type', 'fileType'), file_size=file_size))
    return media_files

def apply_recipients(note, recipients, owner):
    note.recipients = [NoteRecipient(name=r['name'], email=r['email']) for r in recipients]
    note.is_self_message = (len(recipients) == 1 and recipients[0]['email'].lower() == owner.email.lower())
    lifecycle.normalize_visibility(note)

def hash_password(password: str, salt: bytes) -> bytes:
    return hashlib.pbkdf2_hmac('sha256', password.encode('utf-8'), salt, PASSWORD_HASH_ITERATIONS)

def get_request_json():
    request_data = request.get_json(silent=True)
    if not isinstance(request_data, dict):
        raise ValidationError('body', 'a JSON object is required')
    return request_data

def get_owned_note(note_id):
    note = db.session.get(Note, note_id)
    if not note:
        return None, (jsonify({'message': 'Note not found'}), 404)
    if note.owner_id != current_user.id:
        return None, (jsonify({'message': 'You are not the owner of this note!'}), 403)
    return note, None

# Load the user from the login JWT token
@login_manager.request_loader
def load_user_from_request(request):
    authorization_header = request.headers.get('Authorization')

    if not authorization_header:
        return None
    token = authorization_header.replace('Bearer ', '', 1)

    if not token:
        return None
    try:
        data = jwt.decode(token, current_app.config['SECRET_JWT_KEY'], algorithms=['HS256'])
    except jwt.InvalidTokenError:
        return None
    if 'id' not in data:
        return None
    return db.session.get(User, data['id'])

@login_manager.unauthorized_handler
def unauthorized():
    return jsonify({'message': 'Authentication required!'}), 401

@api.errorhandler(LegacyNoteError)
def handle_legacynote_error(error):
    body = {'message': error.message}
    if isinstance(error, MutationRejected):
        body['reason'] = error.reason
    if isinstance(error, ValidationError):
        body['field'] = error.field
    if error.status_code >= 500:
        logger.error('%s: %s', error.__class__.__name__, error.message)
    return jsonify(body), error.status_code

@api.route('/health', methods=['GET'])
def health():
    scheduler = current_app.extensions['legacynote']['scheduler']
    return jsonify({'status': 'ok', 'scheduler_running': scheduler.running}), 200

@api.route('/register', methods=['POST'])
def register():
    request_data = get_request_json()
    name = request_data.get('name')
    email = (request_data.get('email') or '').strip()
    password = request_data.get('password')

    if not name or not email or not password:
        return jsonify({'message': 'Missing required fields'}), 400
    if not lifecycle.EMAIL_RE.match(email):
        return jsonify({'message': 'Please add a valid email'}), 400
    if db.session.query(User).filter(db.func.lower(User.email) == email.lower()).first():
        return jsonify({'message': 'User already exists!'}), 409

    salt = os.urandom(16)
    hashed_password = base64.b64encode(hash_password(password, salt)).decode('utf-8')
    salt = base64.b64encode(salt).decode('utf-8')

    new_user = User(name=name, email=email, password=hashed_password, salt=salt)
    db.session.add(new_user)
    db.session.commit()
    return jsonify({'message': 'New user created!', 'user': dataclass_obj_to_dict(new_user)}), 201

@api.route('/login', methods=['POST'])
def login():
    request_data = get_request_json()
    email = (request_data.get('email') or '').strip()
    password = request_data.get('password') or ''
    user = db.session.query(User).filter(db.func.lower(User.email) == email.lower()).first()
    if not user:
        return jsonify({'message': 'Invalid credentials!'}), 401
    salt = base64.b64decode(user.salt)
    saved_hashed_password = base64.b64decode(user.password)

    if hmac.compare_digest(hash_password(password, salt), saved_hashed_password):
        expiration = datetime.now(timezone.utc) + timedelta(minutes=current_app.config['JWT_EXPIRATION_MINUTES'])
        token = jwt.encode({'id': user.id, 'exp': expiration}, current_app.config['SECRET_JWT_KEY'], algorithm='HS256')
        return jsonify({'message': 'Login success!', 'token': token}), 200
    else:
        return jsonify({'message': 'Invalid credentials!'}), 401

@api.route('/notes', methods=['GET'])
@login_required
def get_notes():
    notes = db.session.query(Note).filter_by(owner_id=current_user.id).order_by(Note.delivery_date).all()
    # Content is left out since this route returns a list of all notes
    return jsonify([note_to_dict(note) for note in notes])

@api.route('/notes/shared_with_me', methods=['GET'])
@login_required
def get_shared_notes():
    notes = (db.session.query(Note).join(NoteRecipient)
             .filter(db.func.lower(NoteRecipient.email) == current_user.email.lower(), Note.is_delivered)
             .order_by(Note.delivered_at.desc()).all())
    shared = []
    for note in notes:
        shared.append(to_json_value({'id': note.id, 'title': note.title, 'sender_name': note.owner.name,
                                     'delivery_date': note.delivery_date, 'delivered_at': note.delivered_at,
                                     'shareable_link': note.shareable_link}))
    return jsonify(shared)

@api.route('/note', methods=['POST'])
@login_required
def add_note():
    request_data = get_request_json()
    title = parse_title(request_data.get('title'))
    content = parse_content(request_data.get('content'))
    delivery_date = parse_delivery_date(get_field(request_data, 'delivery_date', 'deliveryDate'))
    if delivery_date <= lifecycle.utcnow():
        raise ValidationError('delivery_date', 'must be in the future')
    recipients = lifecycle.normalize_recipients(request_data)

    note = Note(owner_id=current_user.id, title=title, delivery_date=delivery_date,
                delivery_timezone=get_field(request_data, 'timezone', default='UTC') or 'UTC',
                exact_time_delivery=parse_bool(get_field(request_data, 'exact_time_delivery', 'exactTimeDelivery', default=True),
                                               'exact_time_delivery'),
                is_public=parse_bool(get_field(request_data, 'is_public', 'isPublic', default=False), 'is_public'))
    note.set_content(content, current_app.config['ENCRYPTION_KEY'])
    note.media_files = parse_media_files(get_field(request_data, 'media_files', 'mediaFiles', default=[]))
    apply_recipients(note, recipients, current_user)
    db.session.add(note)
    db.session.commit()
    logger.info('Note %s created by user %s, delivery at %s', note.id, current_user.id, note.delivery_date)

    send_creation_confirmation(note, current_user)
    return jsonify({'message': 'Note added!', 'note': note_to_dict(note)}), 201

def send_creation_confirmation(note, user):
    mail_sender = current_app.extensions['legacynote']['mail_sender']
    body = mailer.render_creation_confirmation(note.title, user.name, note.delivery_date, note.recipients)
    try:
        mail_sender.send(user.email, f'Your LegacyNote "{note.title}" has been scheduled', body)
    except (DeliveryTransientError, DeliveryRejected) as e:
        # The note is saved either way, a missing confirmation is not worth failing the request
        logger.warning('Could not send the confirmation email for note %s: %s', note.id, e)

@api.route('/note/<note_id>', methods=['GET'])
@login_required
def get_note(note_id):
    note = db.session.get(Note, note_id)
    if not note:
        return jsonify({'message': 'Note not found'}), 404

    access = share_link.check_access(note, requester_id=current_user.id, requester_email=current_user.email)
    if isinstance(access, share_link.Denied):
        return jsonify({'message': 'You are not allowed to access this note!'}), 403

    content = note.decrypt_content(current_app.config['ENCRYPTION_KEY'])
    if note.owner_id == current_user.id:
        return jsonify(note_to_dict(note, content=content))
    return jsonify(shared_note_to_dict(note, content))

@api.route('/note/<note_id>', methods=['PUT'])
@login_required
def update_note(note_id):
    note, error_response = get_owned_note(note_id)
    if error_response:
        return error_response
    lifecycle.ensure_mutable(note, lifecycle.utcnow())

    request_data = get_request_json()
    if 'title' in request_data:
        note.title = parse_title(request_data['title'])
    if 'content' in request_data:
        note.set_content(parse_content(request_data['content']), current_app.config['ENCRYPTION_KEY'])
    delivery_date = get_field(request_data, 'delivery_date', 'deliveryDate')
    if delivery_date is not None:
        delivery_date = parse_delivery_date(delivery_date)
        if delivery_date <= lifecycle.utcnow():
            raise ValidationError('delivery_date', 'must be in the future')
        note.delivery_date = delivery_date
    exact_time_delivery = get_field(request_data, 'exact_time_delivery', 'exactTimeDelivery')
    if exact_time_delivery is not None:
        note.exact_time_delivery = parse_bool(exact_time_delivery, 'exact_time_delivery')
    if 'timezone' in request_data:
        note.delivery_timezone = request_data['timezone'] or 'UTC'
    is_public = get_field(request_data, 'is_public', 'isPublic')
    if is_public is not None:
        note.is_public = parse_bool(is_public, 'is_public')
    media_files = get_field(request_data, 'media_files', 'mediaFiles')
    if media_files is not None:
        note.media_files = parse_media_files(media_files)
    if 'recipients' in request_data or 'recipient' in request_data:
        apply_recipients(note, lifecycle.normalize_recipients(request_data), current_user)
    lifecycle.normalize_visibility(note)

    db.session.commit()
    logger.info('Note %s updated', note.id)
    return jsonify({'message': 'Note updated!', 'note': note_to_dict(note)}), 200

@api.route('/note/<note_id>', methods=['DELETE'])
@login_required
def delete_note(note_id):
    note, error_response = get_owned_note(note_id)
    if error_response:
        return error_response
    lifecycle.ensure_mutable(note, lifecycle.utcnow())

    db.session.delete(note)
    db.session.commit()
    logger.info('Note %s deleted', note_id)
    return jsonify({'message': f'Note with ID {note_id} deleted!'}), 200

@api.route('/note/<note_id>/share', methods=['POST'])
@login_required
def share_note(note_id):
    note, error_response = get_owned_note(note_id)
    if error_response:
        return error_response
    request_data = request.get_json(silent=True) or {}
    regenerate = request_data.get('regenerate') is True

    link = share_link.generate_link(note, current_app.config['FRONTEND_URL'], regenerate=regenerate)
    db.session.commit()
    logger.info('Share link for note %s %s', note.id, 'regenerated' if regenerate else 'requested')
    return jsonify({'shareable_link': link.url, 'is_public': note.is_public}), 200

@api.route('/note/shared/<note_id>/<access_key>', methods=['GET'])
def get_shared_note(note_id, access_key):
    note = db.session.get(Note, note_id)
    if not note:
        return jsonify({'message': 'Note not found',
                        'details': 'The note may have been deleted or the link is invalid'}), 404

    requester_id = current_user.id if current_user.is_authenticated else None
    requester_email = current_user.email if current_user.is_authenticated else None
    access = share_link.check_access(note, access_key=access_key, requester_id=requester_id,
                                     requester_email=requester_email)
    if isinstance(access, share_link.Denied):
        return jsonify({'message': access.reason}), 403
    if isinstance(access, share_link.NotYetAvailable):
        return jsonify({'message': 'This note is not yet available for viewing',
                        'availableOn': to_json_value(access.delivery_date),
                        'details': 'The note will be available after the scheduled delivery date'}), 403

    content = note.decrypt_content(current_app.config['ENCRYPTION_KEY'])
    return jsonify(shared_note_to_dict(note, content))

@click.command('init-db')
@with_appcontext
def init_db_command():
    db.create_all()
    click.echo('Database tables created')

@click.command('deliver-due')
@with_appcontext
def deliver_due_command():
    scheduler = current_app.extensions['legacynote']['scheduler']
    result = scheduler.run_cycle()
    click.echo(f'{result.found} due, {len(result.delivered)} delivered, '
               f'{len(result.retrying)} retrying, {len(result.skipped)} skipped')

@click.command('generate-key')
def generate_key_command():
    click.echo(note_cipher.generate_key())

def create_app(test_config=None, mail_sender=None):
    app = Flask(__name__)
    CORS(app, expose_headers='Authorization')
    app.config.from_mapping(DEFAULT_CONFIG)
    app.config.from_file(os.environ.get('LEGACYNOTE_ENV_FILE', 'env.json'), load=json.load, silent=True)
    app.config.from_prefixed_env('LEGACYNOTE')
    if test_config:
        app.config.from_mapping(test_config)

    if not app.config['SECRET_JWT_KEY']:
        raise RuntimeError('SECRET_JWT_KEY is not configured')
    if not app.config['ENCRYPTION_KEY']:
        raise RuntimeError('ENCRYPTION_KEY is not configured, create one with `flask --app server generate-key`')
    # Fail at startup rather than on the first note
    note_cipher.load_key(app.config['ENCRYPTION_KEY'])

    db.init_app(app)
    login_manager.init_app(app)
    app.register_blueprint(api)
    app.cli.add_command(init_db_command)
    app.cli.add_command(deliver_due_command)
    app.cli.add_command(generate_key_command)

    if mail_sender is None:
        mail_sender = MailSender.from_config(app.config)
    scheduler = DeliveryScheduler(app, mail_sender,
                                  interval_seconds=app.config['DELIVERY_INTERVAL_SECONDS'],
                                  claim_lease_seconds=app.config['DELIVERY_CLAIM_LEASE_SECONDS'])
    app.extensions['legacynote'] = {'mail_sender': mail_sender, 'scheduler': scheduler}

    with app.app_context():
        db.create_all()

    if app.config['SCHEDULER_ENABLED']:
        scheduler.start()
        # Shut down the scheduler when exiting the app, letting the current cycle finish
        atexit.register(scheduler.stop)
    return app

if __name__ == '__main__':
    logging.basicConfig(level=logging.INFO, format='%(asctime)s - %(name)s - %(levelname)s - %(message)s')
    app = create_app()
    app.run(host='0.0.0.0', port=5000)
