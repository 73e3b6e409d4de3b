"""Launch the localization API with uvicorn.
Usage:
  python run_api.py --port 8000 --host 127.0.0.1

Requires the project to be installed (pip install -e .) so 'localizer' resolves.
"""
import argparse
import uvicorn

from localizer.core.config import get_settings


def main():
  parser = argparse.ArgumentParser()
  parser.add_argument('--host', default='127.0.0.1')
  parser.add_argument('--port', type=int, default=8000)
  parser.add_argument('--reload', action='store_true')
  args = parser.parse_args()

  uvicorn.run('localizer.main:app', host=args.host, port=args.port, reload=args.reload,
              log_level=get_settings().log_level.lower())


if __name__ == '__main__':
  # Windows (spawn) safe entrypoint for uvicorn reload / multiprocessing
  main()
