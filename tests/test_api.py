import itertools

from fastapi.testclient import TestClient
from sqlmodel import SQLModel, Session, create_engine

from daily_set import crud, game
from daily_set.cards import all_cards, card_from_dict, card_to_dict
from daily_set.main import app


def setup_db(tmp_path):
    db = tmp_path / 'api.db'
    engine = create_engine(f'sqlite:///{db}', connect_args={"check_same_thread": False})
    SQLModel.metadata.create_all(engine)
    crud.engine = engine
    return engine


def _register(client, username, password="GoodPass1"):
    r = client.post('/api/player', json={"username": username, "password": password})
    assert r.status_code == 201
    return r.json()


def _start(client, username, password="GoodPass1"):
    r = client.post('/api/start_session', json={"username": username, "password": password})
    assert r.status_code == 200
    return r.json()


def _board(payload):
    return [card_from_dict(c) for c in payload["board"]]


def test_health_and_cache_stats():
    client = TestClient(app)
    r = client.get('/health')
    assert r.status_code == 200
    assert r.json().get('status') == 'ok'
    assert 'X-Request-ID' in r.headers

    stats = client.get('/api/cache/stats').json()
    assert stats['status'] == 'ok' and 'hits' in stats['cache_stats']


def test_daily_board_endpoint():
    client = TestClient(app)
    r = client.get('/api/daily', params={"date": "2025-01-01"})
    assert r.status_code == 200
    data = r.json()
    assert data['date'] == '2025-01-01'
    assert len(data['board']) == 12
    assert data['set_count'] == len(game.find_sets(_board(data)))
    # sets are not revealed with the daily board
    assert 'sets' not in data
    assert client.get('/api/daily', params={"date": "2025-01-01"}).json()['board'] == data['board']

    today = client.get('/api/daily').json()
    assert today['date'] == game.today_str()

    assert client.get('/api/daily', params={"date": "2025/01/01"}).status_code == 400
    assert client.get('/api/daily', params={"date": "2025-13-01"}).status_code == 400


def test_practice_board_endpoint():
    client = TestClient(app)
    r = client.get('/api/practice', params={"target_sets": 2})
    assert r.status_code == 200
    data = r.json()
    assert len(data['board']) == 12
    if not data['fallback']:
        assert data['set_count'] == 2
    assert len(client.get('/api/practice', params={"size": 15}).json()['board']) == 15

    assert client.get('/api/practice', params={"target_sets": 50}).status_code == 400
    assert client.get('/api/practice', params={"size": 2}).status_code == 400


def test_practice_rejects_unreachable_targets():
    client = TestClient(app)
    # every 21-card board holds a set
    r = client.get('/api/practice', params={"target_sets": 0, "size": 21})
    assert r.status_code == 400
    # three cards hold at most one set, twelve at most 22
    assert client.get('/api/practice', params={"target_sets": 2, "size": 3}).status_code == 400
    assert client.get('/api/practice', params={"target_sets": 20}).status_code == 200


def test_check_set_and_find_sets():
    client = TestClient(app)
    valid = [
        {"number": 1, "shape": "diamond", "color": "red", "shading": "solid"},
        {"number": 2, "shape": "diamond", "color": "red", "shading": "solid"},
        {"number": 3, "shape": "diamond", "color": "red", "shading": "solid"},
    ]
    assert client.post('/api/check_set', json={"cards": valid}).json() == {"valid": True}
    invalid = [dict(valid[0]), dict(valid[1], shape="oval"), dict(valid[2])]
    assert client.post('/api/check_set', json={"cards": invalid}).json() == {"valid": False}

    assert client.post('/api/check_set', json={"cards": valid[:2]}).status_code == 422
    bad = [dict(valid[0], shape="circle"), valid[1], valid[2]]
    r = client.post('/api/check_set', json={"cards": bad})
    assert r.status_code == 422
    assert r.json()['message'] == 'Input validation failed'

    board = [card_to_dict(c) for c in all_cards()[:9]]
    found = client.post('/api/find_sets', json={"board": board}).json()
    assert found['count'] == 12
    assert found['sets'][0] == [0, 1, 2]
    assert found['sets'] == sorted(found['sets'])
    assert client.post('/api/find_sets', json={"board": []}).json() == {"sets": [], "count": 0}


def test_player_registration_validation(tmp_path):
    setup_db(tmp_path)
    client = TestClient(app)
    assert client.post('/api/player', json={"username": "weak", "password": "password"}).status_code == 422
    assert client.post('/api/player', json={"username": "bad name", "password": "GoodPass1"}).status_code == 422
    assert client.post('/api/player', json={"username": "x" * 13, "password": "GoodPass1"}).status_code == 422
    _register(client, "alice")
    r = client.post('/api/player', json={"username": "alice", "password": "GoodPass1"})
    assert r.status_code == 400


def test_full_daily_session_flow(tmp_path):
    setup_db(tmp_path)
    client = TestClient(app)
    _register(client, "alice")

    bad = client.post('/api/start_session', json={"username": "alice", "password": "WrongPass1"})
    assert bad.status_code == 401

    data = _start(client, "alice")
    sid = data['session_id']
    assert data['date'] == game.today_str()
    assert data['found'] == [] and data['finished'] is False
    board = _board(data)
    sets = game.find_sets(board)
    assert data['target_sets'] == len(sets)

    # a triple that is not a set, and one that is out of range
    miss = next(t for t in itertools.combinations(range(12), 3) if t not in sets)
    r = client.post('/api/submit_set', json={"session_id": sid, "indices": list(miss)})
    assert r.status_code == 400 and r.json()['detail'] == 'not a set'
    r = client.post('/api/submit_set', json={"session_id": sid, "indices": [0, 1, 99]})
    assert r.status_code == 400 and r.json()['detail'] == 'index out of range'

    first = list(reversed(sets[0]))
    r = client.post('/api/submit_set', json={"session_id": sid, "indices": first})
    assert r.status_code == 200
    body = r.json()
    assert body['valid'] and not body['duplicate'] and body['found_count'] == 1
    assert body['set_key'] == game.set_key(sets[0])

    again = client.post('/api/submit_set', json={"session_id": sid, "indices": list(sets[0])}).json()
    assert again['duplicate'] is True and again['found_count'] == 1

    last = None
    for triple in sets[1:]:
        last = client.post('/api/submit_set', json={"session_id": sid, "indices": list(triple)}).json()
        assert last['valid']
    if last is not None:
        assert last['completed'] is True and last['remaining'] == 0
        assert last['seconds'] is not None and last['seconds'] >= 0

        # finished sessions reject further submissions and today cannot be replayed
        r = client.post('/api/submit_set', json={"session_id": sid, "indices": list(sets[0])})
        assert r.status_code == 400
        r = client.post('/api/start_session', json={"username": "alice", "password": "GoodPass1"})
        assert r.status_code == 403
        assert 'Already' in r.json()['detail']

        leaders = client.get('/api/leaderboard').json()['leaders']
        assert [row['username'] for row in leaders] == ['alice']

        status = client.get('/api/status', params={"username": "alice"}).json()
        assert status['played'] is True and status['completed'] is True
        assert status['placement'] == 1

        stats = client.get('/api/stats/alice').json()
        assert stats['total_completions'] == 1 and stats['current_streak'] == 1


def test_resume_session(tmp_path):
    setup_db(tmp_path)
    client = TestClient(app)
    _register(client, "rita")
    first = _start(client, "rita")
    sets = game.find_sets(_board(first))
    client.post('/api/submit_set', json={"session_id": first['session_id'], "indices": list(sets[0])})

    resumed = _start(client, "rita")
    assert resumed['session_id'] == first['session_id']
    assert resumed['found'] == [list(sets[0])]
    assert resumed['remaining'] == len(sets) - 1

    fetched = client.get(f"/api/session/{first['session_id']}").json()
    assert fetched['board'] == first['board']
    assert fetched['elapsed_seconds'] >= 0
    assert client.get('/api/session/nope').status_code == 404


def test_show_sets_counts_as_not_completed(tmp_path):
    setup_db(tmp_path)
    client = TestClient(app)
    _register(client, "bob")
    data = _start(client, "bob")
    sid = data['session_id']

    r = client.post(f'/api/session/{sid}/show_sets')
    assert r.status_code == 200
    shown = r.json()
    assert shown['showed_all_sets'] is True
    assert shown['sets'] == [list(t) for t in game.find_sets(_board(data))]

    assert client.get('/api/leaderboard').json()['leaders'] == []
    status = client.get('/api/status', params={"username": "bob"}).json()
    assert status['played'] is True and status['completed'] is False and status['placement'] is None
    r = client.post('/api/start_session', json={"username": "bob", "password": "GoodPass1"})
    assert r.status_code == 403

    assert client.post(f'/api/session/{sid}/show_sets').json()['sets'] == shown['sets']
    assert client.get('/api/stats/bob').json()['did_not_completes'] == 1
    assert client.post('/api/session/nope/show_sets').status_code == 404


def test_submit_set_validation(tmp_path):
    setup_db(tmp_path)
    client = TestClient(app)
    assert client.post('/api/submit_set', json={"session_id": "x", "indices": [0, 0, 1]}).status_code == 422
    assert client.post('/api/submit_set', json={"session_id": "x", "indices": [0, 1]}).status_code == 422
    assert client.post('/api/submit_set', json={"session_id": "x", "indices": [-1, 0, 1]}).status_code == 422
    assert client.post('/api/submit_set', json={"indices": [0, 1, 2]}).status_code == 422
    assert client.post('/api/submit_set', json={"session_id": "x", "indices": [0, 1, 2]}).status_code == 404


def test_leaderboard_params_and_cache_invalidation(tmp_path):
    engine = setup_db(tmp_path)
    client = TestClient(app)
    assert client.get('/api/leaderboard', params={"date": "2025/13/01"}).status_code == 400
    assert client.get('/api/leaderboard', params={"limit": 0}).status_code == 400
    assert client.get('/api/leaderboard/all_time', params={"limit": 101}).status_code == 400

    date = '2099-06-01'
    assert client.get('/api/leaderboard', params={"date": date}).json()['leaders'] == []
    with Session(engine) as s:
        p = crud.create_player(s, "zoe", "GoodPass1")
        crud.record_completion(s, int(p.id), date, 42.0)
    leaders = client.get('/api/leaderboard', params={"date": date}).json()['leaders']
    assert leaders[0]['username'] == 'zoe' and leaders[0]['seconds'] == 42.0

    assert client.get('/api/leaderboard/all_time').json()['leaders'][0]['username'] == 'zoe'
    assert client.get('/api/leaderboard/average').json()['leaders'] == []


def test_status_and_stats_params(tmp_path):
    setup_db(tmp_path)
    client = TestClient(app)
    assert client.get('/api/status', params={"username": "bad script"}).status_code == 400
    unknown = client.get('/api/status', params={"username": "nobody"}).json()
    assert unknown['played'] is False
    assert client.get('/api/stats/nobody').status_code == 404


def test_submit_to_previous_day_session_expires_it(tmp_path):
    engine = setup_db(tmp_path)
    client = TestClient(app)
    with Session(engine) as s:
        p = crud.create_player(s, "yan", "GoodPass1")
        pid = int(p.id)
        gs = crud.create_session(s, pid, '2000-01-01', all_cards()[:12], 13)
        sid = str(gs.id)

    r = client.post('/api/submit_set', json={"session_id": sid, "indices": [0, 1, 2]})
    assert r.status_code == 400
    assert r.json()['detail'] == 'session expired'

    with Session(engine) as s:
        assert crud.get_session_by_id(s, sid).finished
        comp = crud.get_completion(s, pid, '2000-01-01')
        assert comp is not None and comp.completed is False
        assert crud.get_found_keys(s, sid) == []
