"""
Beta Testing Program Engine
Blueprint registry.
"""


def register_blueprints(app):
    """Attach every API blueprint to the app."""
    from betaprogram.blueprints.beta import beta_bp
    from betaprogram.blueprints.health_bp import health_bp

    app.register_blueprint(beta_bp)
    app.register_blueprint(health_bp)
