import threading

import pytest
from sqlmodel import Session, select

from chrono import models
from chrono.database import engine
from chrono.errors import InvalidStateError, NotFoundError, UnauthorizedError, ValidationError
from chrono.services import RequestLifecycleService


def _links(session, request_id):
    stmt = select(models.RequestLayer).where(models.RequestLayer.request_id == request_id)
    return {l.layer_id: l for l in session.exec(stmt).all()}


def test_form_request_sets_formed_at(make_user, make_request, session):
    owner = make_user("owner")
    req = make_request(owner, text="some text")
    out = RequestLifecycleService(session).form_request(req.id, owner.id)
    assert out == {"status": "formed"}
    session.refresh(req)
    assert req.status == models.STATUS_FORMED
    assert req.formed_at is not None


def test_form_request_twice_is_invalid_state(make_user, make_request, session):
    owner = make_user("owner")
    req = make_request(owner, status=models.STATUS_FORMED)
    with pytest.raises(InvalidStateError) as exc:
        RequestLifecycleService(session).form_request(req.id, owner.id)
    assert exc.value.current_status == models.STATUS_FORMED


def test_form_request_by_other_user_is_unauthorized(make_user, make_request, session):
    owner = make_user("owner")
    stranger = make_user("stranger")
    req = make_request(owner)
    with pytest.raises(UnauthorizedError):
        RequestLifecycleService(session).form_request(req.id, stranger.id)
    session.refresh(req)
    assert req.status == models.STATUS_DRAFT


def test_delete_draft_is_soft_and_hides_request(make_user, make_request, session):
    owner = make_user("owner")
    req = make_request(owner)
    svc = RequestLifecycleService(session)
    assert svc.delete_request(req.id, owner.id) == {"status": "deleted"}
    session.refresh(req)
    assert req.status == models.STATUS_DELETED
    with pytest.raises(NotFoundError):
        svc.get_request(req.id, owner.id)
    with pytest.raises(NotFoundError):
        svc.form_request(req.id, owner.id)


def test_complete_computes_links_and_year_range(make_user, make_layer, make_request, session):
    owner = make_user("owner")
    mod = make_user("mod", moderator=True)
    a = make_layer("A", 1450, 1600, "вещати, чудо")
    b = make_layer("B", 1800, 1917, "социализм")
    c = make_layer("C", 1300, 1350, "thou")
    req = make_request(owner, status=models.STATUS_FORMED, text="вещати о социализм новом")

    out = RequestLifecycleService(session, strategy="local").complete_request(req.id, mod.id)

    assert out == {"status": "completed"}
    session.refresh(req)
    assert req.status == models.STATUS_COMPLETED
    assert req.moderator_id == mod.id
    assert req.completed_at is not None
    assert req.matched_layer_count == 2
    assert (req.result_year_from, req.result_year_to) == (1450, 1917)
    links = _links(session, req.id)
    assert set(links) == {a.id, b.id}
    assert links[a.id].match_count == 1
    assert links[b.id].match_count == 1
    assert c.id not in links


def test_complete_without_matches_leaves_years_unset(make_user, make_layer, make_request, session):
    owner = make_user("owner")
    mod = make_user("mod", moderator=True)
    make_layer("A", 1450, 1600, "вещати")
    req = make_request(owner, status=models.STATUS_FORMED, text="nothing relevant here")
    RequestLifecycleService(session, strategy="local").complete_request(req.id, mod.id)
    session.refresh(req)
    assert req.status == models.STATUS_COMPLETED
    assert req.matched_layer_count == 0
    assert req.result_year_from is None
    assert req.result_year_to is None
    assert _links(session, req.id) == {}


def test_complete_ignores_deleted_layers(make_user, make_layer, make_request, session):
    owner = make_user("owner")
    mod = make_user("mod", moderator=True)
    make_layer("Old", 1000, 1100, "word", status=models.LAYER_DELETED)
    req = make_request(owner, status=models.STATUS_FORMED, text="word")
    RequestLifecycleService(session, strategy="local").complete_request(req.id, mod.id)
    session.refresh(req)
    assert req.matched_layer_count == 0


@pytest.mark.parametrize("text", [None, "", "   "])
def test_complete_with_empty_text_fails_without_writes(text, make_user, make_layer, make_request, session):
    owner = make_user("owner")
    mod = make_user("mod", moderator=True)
    make_layer("A", 1450, 1600, "вещати")
    req = make_request(owner, status=models.STATUS_FORMED, text=text)
    with pytest.raises(ValidationError):
        RequestLifecycleService(session).complete_request(req.id, mod.id)
    session.refresh(req)
    assert req.status == models.STATUS_FORMED
    assert req.completed_at is None
    assert req.moderator_id is None
    assert req.matched_layer_count is None
    assert _links(session, req.id) == {}


def test_complete_requires_moderator(make_user, make_request, session):
    owner = make_user("owner")
    req = make_request(owner, status=models.STATUS_FORMED, text="text")
    with pytest.raises(UnauthorizedError):
        RequestLifecycleService(session).complete_request(req.id, owner.id)


def test_complete_draft_is_invalid_state(make_user, make_request, session):
    owner = make_user("owner")
    mod = make_user("mod", moderator=True)
    req = make_request(owner, text="text")
    with pytest.raises(InvalidStateError):
        RequestLifecycleService(session).complete_request(req.id, mod.id)


def test_complete_twice_is_invalid_state(make_user, make_layer, make_request, session):
    owner = make_user("owner")
    mod = make_user("mod", moderator=True)
    make_layer("A", 1450, 1600, "вещати")
    req = make_request(owner, status=models.STATUS_FORMED, text="вещати")
    svc = RequestLifecycleService(session, strategy="local")
    svc.complete_request(req.id, mod.id)
    with pytest.raises(InvalidStateError):
        svc.complete_request(req.id, mod.id)


def test_complete_missing_request_is_not_found(make_user, session):
    mod = make_user("mod", moderator=True)
    with pytest.raises(NotFoundError):
        RequestLifecycleService(session).complete_request(9999, mod.id)


def test_complete_overwrites_cart_link_and_keeps_comment(make_user, make_layer, make_request, session):
    owner = make_user("owner")
    mod = make_user("mod", moderator=True)
    layer = make_layer("A", 1450, 1600, "вещати чудо")
    svc = RequestLifecycleService(session, strategy="local")
    cart = svc.add_layer_to_draft(layer.id, owner.id)
    request_id = cart["request_id"]
    svc.set_link_comment(request_id, layer.id, owner.id, "check this one")
    svc.update_draft(request_id, owner.id, {"text_for_analysis": "чудо вещати чудо"})
    svc.form_request(request_id, owner.id)

    svc.complete_request(request_id, mod.id)

    links = _links(session, request_id)
    assert list(links) == [layer.id]
    assert links[layer.id].match_count == 2
    assert links[layer.id].comment == "check this one"


def test_concurrent_completion_has_exactly_one_winner(make_user, make_layer, make_request, session):
    owner = make_user("owner")
    mod = make_user("mod", moderator=True)
    a = make_layer("A", 1450, 1600, "вещати")
    b = make_layer("B", 1800, 1917, "социализм")
    req = make_request(owner, status=models.STATUS_FORMED, text="вещати социализм")
    request_id, moderator_id = req.id, mod.id

    barrier = threading.Barrier(2)
    outcomes = []
    lock = threading.Lock()

    def attempt():
        with Session(engine) as s:
            svc = RequestLifecycleService(s, strategy="local")
            barrier.wait()
            try:
                result = svc.complete_request(request_id, moderator_id)
            except InvalidStateError as exc:
                result = exc
        with lock:
            outcomes.append(result)

    threads = [threading.Thread(target=attempt) for _ in range(2)]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=30)

    assert len(outcomes) == 2
    wins = [o for o in outcomes if o == {"status": "completed"}]
    losses = [o for o in outcomes if isinstance(o, InvalidStateError)]
    assert len(wins) == 1
    assert len(losses) == 1

    session.expire_all()
    links = _links(session, request_id)
    assert set(links) == {a.id, b.id}
    assert all(l.match_count == 1 for l in links.values())
    stored = session.get(models.ResearchRequest, request_id)
    assert stored.status == models.STATUS_COMPLETED
    assert stored.matched_layer_count == 2


def test_add_layer_to_draft_creates_single_draft(make_user, make_layer, session):
    owner = make_user("owner")
    a = make_layer("A", 1450, 1600, "a")
    b = make_layer("B", 1800, 1917, "b")
    svc = RequestLifecycleService(session)
    assert svc.get_cart(owner.id) == {"request_id": None, "count": 0}
    first = svc.add_layer_to_draft(a.id, owner.id)
    second = svc.add_layer_to_draft(b.id, owner.id)
    again = svc.add_layer_to_draft(b.id, owner.id)
    assert first["request_id"] == second["request_id"] == again["request_id"]
    assert again["count"] == 2
    assert svc.get_cart(owner.id) == {"request_id": first["request_id"], "count": 2}


def test_add_deleted_layer_is_not_found(make_user, make_layer, session):
    owner = make_user("owner")
    gone = make_layer("Gone", 1000, 1100, "x", status=models.LAYER_DELETED)
    with pytest.raises(NotFoundError):
        RequestLifecycleService(session).add_layer_to_draft(gone.id, owner.id)


def test_update_draft_only_while_draft(make_user, make_request, session):
    owner = make_user("owner")
    req = make_request(owner)
    svc = RequestLifecycleService(session)
    updated = svc.update_draft(req.id, owner.id, {"text_for_analysis": "new text", "purpose": "study"})
    assert updated.text_for_analysis == "new text"
    assert updated.purpose == "study"
    svc.form_request(req.id, owner.id)
    with pytest.raises(InvalidStateError):
        svc.update_draft(req.id, owner.id, {"text_for_analysis": "changed"})


def test_remove_layer_from_draft(make_user, make_layer, session):
    owner = make_user("owner")
    layer = make_layer("A", 1450, 1600, "a")
    svc = RequestLifecycleService(session)
    request_id = svc.add_layer_to_draft(layer.id, owner.id)["request_id"]
    svc.remove_layer(request_id, layer.id, owner.id)
    assert svc.get_cart(owner.id)["count"] == 0
    with pytest.raises(NotFoundError):
        svc.remove_layer(request_id, layer.id, owner.id)


def test_list_requests_scoped_by_role(make_user, make_request, session):
    alice = make_user("alice")
    bob = make_user("bob")
    mod = make_user("mod", moderator=True)
    make_request(alice)
    a_formed = make_request(alice, status=models.STATUS_FORMED)
    b_done = make_request(bob, status=models.STATUS_COMPLETED)
    svc = RequestLifecycleService(session)

    assert [r.id for r, _ in svc.list_requests(alice.id)] == [a_formed.id]
    assert {r.id for r, _ in svc.list_requests(mod.id)} == {a_formed.id, b_done.id}
    assert [r.id for r, _ in svc.list_requests(mod.id, status="completed")] == [b_done.id]
    with pytest.raises(ValidationError):
        svc.list_requests(mod.id, status="draft")


def test_concurrent_completion_of_requests_sharing_layers(make_user, make_layer, make_request, session):
    alice = make_user("alice")
    bob = make_user("bob")
    mod = make_user("mod", moderator=True)
    shared = make_layer("Shared", 1450, 1600, "вещати")
    only_b = make_layer("OnlyB", 1800, 1917, "социализм")
    first = make_request(alice, status=models.STATUS_FORMED, text="вещати")
    second = make_request(bob, status=models.STATUS_FORMED, text="вещати социализм")
    request_ids, moderator_id = [first.id, second.id], mod.id

    barrier = threading.Barrier(2)
    outcomes = {}
    lock = threading.Lock()

    def attempt(request_id):
        with Session(engine) as s:
            svc = RequestLifecycleService(s, strategy="local")
            barrier.wait()
            result = svc.complete_request(request_id, moderator_id)
        with lock:
            outcomes[request_id] = result

    threads = [threading.Thread(target=attempt, args=(rid,)) for rid in request_ids]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=30)

    assert outcomes == {first.id: {"status": "completed"}, second.id: {"status": "completed"}}

    session.expire_all()
    rows = session.exec(select(models.RequestLayer)).all()
    pairs = [(r.request_id, r.layer_id) for r in rows]
    assert len(pairs) == len(set(pairs))
    assert sorted(pairs) == sorted([
        (first.id, shared.id),
        (second.id, shared.id),
        (second.id, only_b.id),
    ])
    assert all(r.match_count == 1 for r in rows)
    assert session.get(models.ResearchRequest, first.id).matched_layer_count == 1
    assert session.get(models.ResearchRequest, second.id).matched_layer_count == 2
