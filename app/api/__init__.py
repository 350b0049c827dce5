def register_blueprints(app):
    from app.api.bookmarks import bp as bookmarks_bp
    from app.api.setup import bp as setup_bp

    app.register_blueprint(bookmarks_bp)
    app.register_blueprint(setup_bp)
