"""
Blueprint registration for the well-being platform.

All blueprints are registered without URL prefixes; routes carry their full /api/... paths.
"""

from __future__ import annotations


def register_blueprints(app):
    from blueprints.core import bp as core_bp
    from blueprints.checkins import bp as checkins_bp
    from blueprints.alerts import bp as alerts_bp
    from blueprints.chat import bp as chat_bp
    from blueprints.mailbox import bp as mailbox_bp
    from blueprints.dec import bp as dec_bp
    from blueprints.pulse import bp as pulse_bp
    from blueprints.statistics import bp as statistics_bp
    from blueprints.admin import bp as admin_bp
    from blueprints.notifications import bp as notifications_bp
    from blueprints.rewards import bp as rewards_bp
    from blueprints.paec import bp as paec_bp

    app.register_blueprint(core_bp)
    app.register_blueprint(checkins_bp)
    app.register_blueprint(alerts_bp)
    app.register_blueprint(chat_bp)
    app.register_blueprint(mailbox_bp)
    app.register_blueprint(dec_bp)
    app.register_blueprint(pulse_bp)
    app.register_blueprint(statistics_bp)
    app.register_blueprint(admin_bp)
    app.register_blueprint(notifications_bp)
    app.register_blueprint(rewards_bp)
    app.register_blueprint(paec_bp)
