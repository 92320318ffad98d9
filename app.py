import os

from dotenv import load_dotenv
from flask import Flask

load_dotenv()

from models import db
from background_jobs import start_scheduler
from services.calendar_routes import api_calendar_occurrences
from services.reminder_routes import api_dispatch_reminders, api_due_reminders
from services.user_routes import current_user, set_user

app = Flask(__name__)
app.config['SQLALCHEMY_DATABASE_URI'] = os.environ.get('DATABASE_URL', 'sqlite:///calendar.db')
app.config['SQLALCHEMY_TRACK_MODIFICATIONS'] = False
app.config['SECRET_KEY'] = os.environ.get('SECRET_KEY', 'dev-secret-key-change-in-production')
app.config['PERMANENT_SESSION_LIFETIME'] = 365 * 24 * 60 * 60  # 1 year in seconds
app.config['API_SHARED_KEY'] = os.environ.get('API_SHARED_KEY')  # Optional shared key for job/API callers
app.config['DEFAULT_TIMEZONE'] = os.environ.get('DEFAULT_TIMEZONE', 'UTC')
app.config['REMINDER_POLL_MINUTES'] = int(os.environ.get('REMINDER_POLL_MINUTES', 1))
app.config['REMINDER_MAX_WORKERS'] = int(os.environ.get('REMINDER_MAX_WORKERS', 4))
app.config['REMINDER_LOCK_STALE_MINUTES'] = int(os.environ.get('REMINDER_LOCK_STALE_MINUTES', 5))
app.config['REMINDER_DATE_FORMAT'] = os.environ.get('REMINDER_DATE_FORMAT', '%B %d, %Y')
app.config['REMINDER_TIME_FORMAT'] = os.environ.get('REMINDER_TIME_FORMAT', '%H:%M')

db.init_app(app)

with app.app_context():
    db.create_all()

app.add_url_rule('/api/set-user/<int:user_id>', view_func=set_user, methods=['POST'])
app.add_url_rule('/api/current-user', view_func=current_user, methods=['GET'])
app.add_url_rule('/api/calendar/occurrences', view_func=api_calendar_occurrences, methods=['GET'])
app.add_url_rule('/api/reminders/due', view_func=api_due_reminders, methods=['GET'])
app.add_url_rule('/api/reminders/dispatch', view_func=api_dispatch_reminders, methods=['POST'])

# Start scheduler on process startup (not request-dependent).
# Can be disabled for tooling/scripts/tests that only need app context.
if os.environ.get('BOOTSTRAP_JOBS_ON_IMPORT', '1') == '1':
    try:
        start_scheduler(app)
    except Exception as e:
        app.logger.error(f"Error starting scheduler on startup: {e}")

if __name__ == '__main__':
    app.run(host='0.0.0.0', debug=True)
