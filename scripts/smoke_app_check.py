import sys
from pathlib import Path

# ensure repo root is on sys.path so `relay` package can be imported
ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(ROOT))

from fastapi.testclient import TestClient

from relay.config import Settings
from relay.main import create_app


def _show(label, r):
    print(label, '->', r.status_code)
    try:
        print(r.json())
    except ValueError:
        print(r.text[:200])


def run_smoke():
    app = create_app(Settings(database_url='memory://'))
    with TestClient(app) as client:
        _show('GET /health', client.get('/health'))
        _show('\nGET /check/SMOKE1', client.get('/check/SMOKE1'))
        _show('\nPOST /share', client.post('/share', json={'code': 'SMOKE1', 'data': 'c21va2U=', 'expires_minutes': 5}))
        _show('\nGET /check/SMOKE1', client.get('/check/SMOKE1'))
        _show('\nGET /receive/SMOKE1', client.get('/receive/SMOKE1'))
        _show('\nGET /receive/UNKNOWN', client.get('/receive/UNKNOWN'))
        print('\nGET /metrics ->', client.get('/metrics').status_code)
        print('\nsweep removed ->', app.state.sweeper.run_once())


if __name__ == '__main__':
    run_smoke()
