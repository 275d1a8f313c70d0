import json

from chrono import models, repositories
from scripts import promote_moderator, seed_layers


def test_seed_layers_creates_and_skips(tmp_path, session, make_layer):
    make_layer("Existing", 1000, 1100, "old")
    path = tmp_path / "layers.json"
    path.write_text(json.dumps([
        {"name": "Existing", "year_from": 1000, "year_to": 1100, "words": "old"},
        {"name": "Soviet", "year_from": 1917, "year_to": 1991, "words": "социализм; совет"},
        {"name": "Broken", "year_from": 1900, "year_to": 1800},
    ]), encoding="utf-8")

    assert seed_layers.main(path) == 0

    names = [l.name for l in repositories.LayerRepository(session).list_active()]
    assert names == ["Existing", "Soviet"]


def test_promote_and_revoke_moderator(session, make_user):
    user = make_user("carol")
    assert promote_moderator.main("carol") == 0
    session.refresh(user)
    assert user.is_moderator is True
    assert promote_moderator.main("carol", revoke=True) == 0
    session.refresh(user)
    assert user.is_moderator is False
    assert promote_moderator.main("nobody") == 1
    assert session.get(models.User, user.id).username == "carol"
