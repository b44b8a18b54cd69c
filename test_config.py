from config import app, load_secret_key


def test_secret_key_comes_from_environment(monkeypatch):
    monkeypatch.setenv('SECRET_KEY', 'from-env')
    assert load_secret_key() == 'from-env'
    assert app.secret_key == 'test-secret'


def test_missing_secret_key_is_random_per_process(monkeypatch, caplog):
    monkeypatch.delenv('SECRET_KEY', raising=False)

    with caplog.at_level('WARNING', logger='config'):
        first = load_secret_key()
    second = load_secret_key()

    assert len(first) == 64
    assert first != second
    assert 'SECRET_KEY is not set' in caplog.text
