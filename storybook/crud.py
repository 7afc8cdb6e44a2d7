import logging

from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from . import config
from .database import AccountDB, CreditTransactionDB, StoryDB, StorySegmentDB
from .errors import AccountNotFoundError, BillingError, InsufficientCreditsError, PersistenceError
from .models import GenerationRequest, RealizedStory, StoryRecord, StoryResult

logger = logging.getLogger(__name__)


def create_account(db: Session, email: str, initial_credits: int = config.FREE_CREDITS):
    """Creates an account with its free credit grant."""
    account = AccountDB(email=email, story_credits=initial_credits)
    db.add(account)
    db.flush()
    db.add(CreditTransactionDB(
        user_id=account.id,
        credits=initial_credits,
        transaction_type="initial_free_credits",
        status="completed",
    ))
    db.commit()
    db.refresh(account)
    return account


def get_account(db: Session, account_id: int):
    return db.query(AccountDB).filter(AccountDB.id == account_id).first()


def get_credit_balance(db: Session, account_id: int) -> int:
    balance = db.scalar(select(AccountDB.story_credits).where(AccountDB.id == account_id))
    if balance is None:
        raise AccountNotFoundError(f"Account {account_id} not found")
    return balance


def ensure_credits(db: Session, account_id: int, cost: int = config.STORY_CREDIT_COST) -> int:
    """Rejects a request up front when the balance cannot cover it."""
    balance = get_credit_balance(db, account_id)
    if balance < cost:
        raise InsufficientCreditsError(account_id, balance, cost)
    return balance


def add_credits(db: Session, account_id: int, credits: int, amount_cents: int = 0,
                payment_reference: str | None = None) -> int:
    """Records a completed credit purchase and returns the new balance."""
    if not config.MIN_CREDITS_PURCHASE <= credits <= config.MAX_CREDITS_PURCHASE:
        raise BillingError(
            f"Credit purchases must be between {config.MIN_CREDITS_PURCHASE} "
            f"and {config.MAX_CREDITS_PURCHASE} credits"
        )
    try:
        result = db.execute(
            update(AccountDB)
            .where(AccountDB.id == account_id)
            .values(story_credits=AccountDB.story_credits + credits)
        )
        if result.rowcount != 1:
            raise AccountNotFoundError(f"Account {account_id} not found")
        db.add(CreditTransactionDB(
            user_id=account_id,
            amount=amount_cents,
            credits=credits,
            transaction_type="credit_purchase",
            status="completed",
            payment_reference=payment_reference,
        ))
        db.commit()
    except Exception:
        db.rollback()
        raise
    return get_credit_balance(db, account_id)


def _debit_credits(db: Session, account_id: int, cost: int) -> None:
    # FOR UPDATE locks the row where the backend supports it; the guarded
    # UPDATE below is what serializes concurrent debits everywhere else.
    locked = db.execute(
        select(AccountDB.id).where(AccountDB.id == account_id).with_for_update()
    ).scalar_one_or_none()
    if locked is None:
        raise AccountNotFoundError(f"Account {account_id} not found")
    result = db.execute(
        update(AccountDB)
        .where(AccountDB.id == account_id, AccountDB.story_credits >= cost)
        .values(story_credits=AccountDB.story_credits - cost)
    )
    if result.rowcount != 1:
        balance = db.scalar(select(AccountDB.story_credits).where(AccountDB.id == account_id))
        if balance is None:
            raise AccountNotFoundError(f"Account {account_id} not found")
        raise InsufficientCreditsError(account_id, balance, cost)


def persist_story(
    db: Session,
    account_id: int,
    request: GenerationRequest,
    realized: RealizedStory,
    cost: int = config.STORY_CREDIT_COST,
) -> StoryResult:
    """Debits the account and writes the story with its ordered segments.

    Everything happens in one transaction: on any failure nothing is
    written and the balance is left untouched.
    """
    content = realized.content
    try:
        _debit_credits(db, account_id, cost)

        story = StoryDB(
            user_id=account_id,
            title=content.title,
            child_name=request.child_name,
            child_age=request.child_age,
            main_character=request.main_character,
            characters=[entity.model_dump(mode="json") for entity in content.characters],
            theme=request.theme.value,
            content=content.narration,
            image_urls=[item.image_url for item in realized.media],
            parent_approved=False,
        )
        story.segments = [
            StorySegmentDB(
                content=scene.narration,
                image_url=item.image_url,
                audio_url=item.audio_url,
                sequence=item.sequence,
            )
            for scene, item in zip(content.scenes, realized.media)
        ]
        db.add(story)
        db.flush()

        db.add(CreditTransactionDB(
            user_id=account_id,
            credits=-cost,
            transaction_type="story_creation",
            status="completed",
            story_id=story.id,
        ))
        db.commit()
    except BillingError:
        db.rollback()
        raise
    except SQLAlchemyError as e:
        db.rollback()
        logger.error("Story transaction for account %d rolled back.", account_id, exc_info=True)
        raise PersistenceError(f"Failed to save story: {e}") from e
    except Exception:
        db.rollback()
        raise

    db.refresh(story)
    logger.info("Story %d saved for account %d.", story.id, account_id)
    return StoryResult(
        story=StoryRecord.model_validate(story),
        credits_remaining=get_credit_balance(db, account_id),
    )


def get_story(db: Session, story_id: int):
    """Gets a story by its ID."""
    return db.query(StoryDB).filter(StoryDB.id == story_id).first()


def list_stories(db: Session, account_id: int):
    """Gets an account's stories, newest first."""
    return (
        db.query(StoryDB)
        .filter(StoryDB.user_id == account_id)
        .order_by(StoryDB.created_at.desc(), StoryDB.id.desc())
        .all()
    )


def approve_story(db: Session, story_id: int, account_id: int):
    """Marks a story as approved by the parent who owns it."""
    db_story = get_story(db, story_id)
    if db_story is None or db_story.user_id != account_id:
        return None
    db_story.parent_approved = True
    db.commit()
    db.refresh(db_story)
    return db_story


def delete_story(db: Session, story_id: int, account_id: int) -> bool:
    """Deletes a story and, by cascade, its segments."""
    db_story = get_story(db, story_id)
    if db_story is None or db_story.user_id != account_id:
        return False
    db.delete(db_story)
    db.commit()
    return True
