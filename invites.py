"""
Invite-gated signup.

A token is single use: it is claimed with a conditional update on
`used == False` before the member document is created, so two signups with
the same token cannot both succeed.
"""

import logging
import secrets
from typing import Any, Dict, List, Optional

from pymongo import DESCENDING, ReturnDocument
from pymongo.database import Database

from database import INVITES, MEMBERS, new_id, public, utcnow
from errors import AuthenticationFailed, EmailAlreadyRegistered, InviteEmailMismatch, InviteInvalid
from security import ADMIN, MEMBER, create_token, hash_password, member_role, verify_password

logger = logging.getLogger(__name__)


def create_invite(db: Database, email: Optional[str] = None, role: str = MEMBER,
                  created_by: Optional[str] = None) -> Dict[str, Any]:
    invite = {
        "_id": new_id(),
        "token": secrets.token_urlsafe(16),
        "email": email.lower() if email else None,
        "role": ADMIN if role == ADMIN else MEMBER,
        "used": False,
        "usedAt": None,
        "usedBy": None,
        "createdBy": created_by,
        "createdAt": utcnow(),
    }
    db[INVITES].insert_one(invite)
    logger.info("Invite %s created for %s (%s)", invite["_id"], invite["email"] or "any email", invite["role"])
    return invite


def list_invites(db: Database) -> List[Dict[str, Any]]:
    return [public(i) for i in db[INVITES].find().sort("createdAt", DESCENDING)]


def redeem_invite(db: Database, token: str, email: str, password: str) -> Dict[str, Any]:
    """Create a member account from an unused invite and return the member."""
    email = email.strip().lower()
    invite = db[INVITES].find_one({"token": token, "used": False})
    if invite is None:
        raise InviteInvalid()
    if invite.get("email") and invite["email"].lower() != email:
        raise InviteEmailMismatch()
    if db[MEMBERS].find_one({"email": email}):
        raise EmailAlreadyRegistered(email)

    member_id = new_id()
    claimed = db[INVITES].find_one_and_update(
        {"_id": invite["_id"], "used": False},
        {"$set": {"used": True, "usedAt": utcnow(), "usedBy": member_id}},
        return_document=ReturnDocument.AFTER,
    )
    if claimed is None:
        raise InviteInvalid()

    now = utcnow()
    member = {
        "_id": member_id,
        "email": email,
        "hashedPassword": hash_password(password),
        "role": member_role(invite),
        "firstName": "",
        "lastName": "",
        "phone": "",
        "membershipStatus": "en-attente",
        "createdAt": now,
        "updatedAt": now,
    }
    db[MEMBERS].insert_one(member)
    logger.info("Invite %s redeemed by member %s", invite["_id"], member_id)
    return member


def authenticate(db: Database, email: str, password: str) -> Dict[str, Any]:
    member = db[MEMBERS].find_one({"email": email.strip().lower()})
    if not member or not verify_password(password, member.get("hashedPassword", "")):
        raise AuthenticationFailed("Invalid credentials")
    return member


def session_payload(member: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "token": create_token(member),
        "member": {
            "id": member["_id"],
            "email": member.get("email"),
            "role": member_role(member),
        },
    }
