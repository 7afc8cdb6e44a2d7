import threading

import pytest
from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError

from storybook import crud
from storybook.database import CreditTransactionDB, StoryDB, StorySegmentDB
from storybook.errors import AccountNotFoundError, BillingError, InsufficientCreditsError, PersistenceError
from storybook.models import PromptedScene, RealizedStory, SceneMedia, StoryContent


def _realized(title="Mira's Day"):
    content = StoryContent(
        title=title,
        characters=(),
        settings=(),
        scenes=tuple(
            PromptedScene(number=n, narration=f"Scene {n} text.", illustration_prompt=f"prompt {n}")
            for n in (1, 2, 3)
        ),
    )
    media = tuple(
        SceneMedia(sequence=n, image_url=f"/images/{n}.png", audio_url=f"/audio/{n}.mp3")
        for n in (1, 2, 3)
    )
    return RealizedStory(content=content, media=media)


def _count(db, model):
    return db.scalar(select(func.count()).select_from(model))


def test_new_account_gets_free_credits(db, account):
    assert account.story_credits == 3
    assert crud.get_credit_balance(db, account.id) == 3
    ledger = db.scalars(select(CreditTransactionDB)).all()
    assert [(t.transaction_type, t.credits) for t in ledger] == [("initial_free_credits", 3)]


def test_persist_story_debits_and_saves_segments(db, account, request_form):
    result = crud.persist_story(db, account.id, request_form, _realized())

    assert result.credits_remaining == 2
    assert result.story.title == "Mira's Day"
    assert result.story.content == "Scene 1 text.\n\nScene 2 text.\n\nScene 3 text."
    assert [s.sequence for s in result.story.segments] == [1, 2, 3]
    assert result.story.image_urls == ["/images/1.png", "/images/2.png", "/images/3.png"]
    assert result.story.segments[2].audio_url == "/audio/3.mp3"
    assert _count(db, StoryDB) == 1
    assert _count(db, StorySegmentDB) == 3

    debit = db.scalars(
        select(CreditTransactionDB).where(CreditTransactionDB.transaction_type == "story_creation")
    ).one()
    assert debit.credits == -1
    assert debit.story_id == result.story.id


def test_persist_story_without_credits(db, request_form):
    account = crud.create_account(db, "broke@example.com", initial_credits=0)
    with pytest.raises(InsufficientCreditsError) as exc_info:
        crud.persist_story(db, account.id, request_form, _realized())
    assert exc_info.value.balance == 0
    assert _count(db, StoryDB) == 0
    assert crud.get_credit_balance(db, account.id) == 0


def test_persist_story_unknown_account(db, request_form):
    with pytest.raises(AccountNotFoundError):
        crud.persist_story(db, 999, request_form, _realized())


def test_failed_write_rolls_back_the_debit(db, account, request_form, monkeypatch):
    def broken_ledger(**kwargs):
        raise SQLAlchemyError("disk I/O error")

    monkeypatch.setattr(crud, "CreditTransactionDB", broken_ledger)
    with pytest.raises(PersistenceError):
        crud.persist_story(db, account.id, request_form, _realized())

    assert crud.get_credit_balance(db, account.id) == 3
    assert _count(db, StoryDB) == 0
    assert _count(db, StorySegmentDB) == 0


def test_concurrent_persists_with_one_credit(session_factory, request_form):
    with session_factory() as db:
        account_id = crud.create_account(db, "one@example.com", initial_credits=1).id

    barrier = threading.Barrier(2)
    outcomes = []

    def attempt(title):
        with session_factory() as db:
            barrier.wait()
            try:
                crud.persist_story(db, account_id, request_form, _realized(title))
                outcomes.append("saved")
            except InsufficientCreditsError:
                outcomes.append("rejected")

    threads = [threading.Thread(target=attempt, args=(f"Story {i}",)) for i in range(2)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert sorted(outcomes) == ["rejected", "saved"]
    with session_factory() as db:
        assert crud.get_credit_balance(db, account_id) == 0
        assert _count(db, StoryDB) == 1


def test_ensure_credits(db, request_form):
    account = crud.create_account(db, "none@example.com", initial_credits=0)
    with pytest.raises(InsufficientCreditsError):
        crud.ensure_credits(db, account.id)
    with pytest.raises(AccountNotFoundError):
        crud.ensure_credits(db, 12345)


def test_add_credits(db, account):
    balance = crud.add_credits(db, account.id, 10, amount_cents=500, payment_reference="pay_123")
    assert balance == 13
    purchase = db.scalars(
        select(CreditTransactionDB).where(CreditTransactionDB.transaction_type == "credit_purchase")
    ).one()
    assert purchase.amount == 500
    assert purchase.payment_reference == "pay_123"


@pytest.mark.parametrize("credits", [0, 101, -5])
def test_add_credits_out_of_range(db, account, credits):
    with pytest.raises(BillingError):
        crud.add_credits(db, account.id, credits)
    assert crud.get_credit_balance(db, account.id) == 3


def test_add_credits_unknown_account(db):
    with pytest.raises(AccountNotFoundError):
        crud.add_credits(db, 999, 5)


def test_list_stories_newest_first(db, account, request_form):
    first = crud.persist_story(db, account.id, request_form, _realized("First")).story
    second = crud.persist_story(db, account.id, request_form, _realized("Second")).story
    other = crud.create_account(db, "other@example.com")
    crud.persist_story(db, other.id, request_form, _realized("Not mine"))

    stories = crud.list_stories(db, account.id)
    assert [s.id for s in stories] == [second.id, first.id]


def test_approve_story_only_for_owner(db, account, request_form):
    story = crud.persist_story(db, account.id, request_form, _realized()).story
    other = crud.create_account(db, "other@example.com")

    assert crud.approve_story(db, story.id, other.id) is None
    approved = crud.approve_story(db, story.id, account.id)
    assert approved.parent_approved is True


def test_delete_story_removes_segments(db, account, request_form):
    story = crud.persist_story(db, account.id, request_form, _realized()).story
    other = crud.create_account(db, "other@example.com")

    assert crud.delete_story(db, story.id, other.id) is False
    assert crud.delete_story(db, story.id, account.id) is True
    assert crud.get_story(db, story.id) is None
    assert _count(db, StorySegmentDB) == 0

    db.expire_all()
    debit = db.scalars(
        select(CreditTransactionDB).where(CreditTransactionDB.transaction_type == "story_creation")
    ).one()
    assert debit.story_id is None
