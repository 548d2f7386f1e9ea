from fastapi import APIRouter, Depends
from typing import List
from sqlalchemy.orm import Session
from examcore.core.auth import require_roles, TokenData
from examcore.core.database import get_db
from examcore.models.schemas import CamelModel
from examcore.services.access_codes import list_test_access, unlocked_test_ids

router = APIRouter()

class TestAccessOut(CamelModel):
    test_id: str
    title: str
    locked: bool

class UnlockedTests(CamelModel):
    educator_id: str
    test_ids: List[str]
    tests: List[TestAccessOut] = []

@router.get("", response_model=UnlockedTests)
def my_unlocks(educatorId: str, user: TokenData = Depends(require_roles("student")), db: Session = Depends(get_db)):
    tests = [TestAccessOut(test_id=t.test_id, title=t.title, locked=t.locked) for t in list_test_access(db, user.sub, educatorId)]
    return UnlockedTests(educator_id=educatorId, test_ids=unlocked_test_ids(db, user.sub, educatorId), tests=tests)
