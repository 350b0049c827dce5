"""Run the bookmark collection store locally.

    python run.py [--host 127.0.0.1] [--port 5000]

Change streams hold a worker each, so the development server runs threaded.
"""

import argparse

from app import create_app


def main():
    parser = argparse.ArgumentParser(description='Bookmark collection store')
    parser.add_argument('--host', default='127.0.0.1')
    parser.add_argument('--port', type=int, default=5000)
    args = parser.parse_args()

    app = create_app()
    app.run(host=args.host, port=args.port, threaded=True)


if __name__ == '__main__':
    main()
