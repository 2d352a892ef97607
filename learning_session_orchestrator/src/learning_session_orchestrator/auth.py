"""
Auth collaborator backed by Supabase Auth.

Exposes the current profile as an AuthUser plus a loading flag, and
supplies bearer tokens to the remote progress API. Profiles live in the
`profiles` table (id, name, user_type, preferences{grade, interests}).
"""

import logging
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from learning_session_orchestrator.session_state import AuthUser, Role

logger = logging.getLogger(__name__)

AuthListener = Callable[[Optional[AuthUser], bool], None]


def profile_to_user(profile: Dict[str, Any], email: Optional[str] = None) -> AuthUser:
    """Map a profiles row to an AuthUser. Unknown user types become students."""
    prefs = profile.get("preferences")
    if not isinstance(prefs, dict):
        prefs = {}
    grade = prefs.get("grade")
    interests = prefs.get("interests")
    return AuthUser(
        id=profile["id"],
        role=Role.parse(profile.get("user_type")),
        grade=grade if isinstance(grade, str) else "",
        interests=[i for i in interests if isinstance(i, str)] if isinstance(interests, list) else [],
        email=email,
        name=profile.get("name") or (email.split("@")[0] if email else None),
    )


class AuthSession:
    """
    Current user and loading state.

    Listeners are called with (user, loading) on every change; the
    Navigation Controller's sync_auth is the usual listener.
    """

    def __init__(self, supabase_client=None):
        """
        Args:
            supabase_client: Supabase client instance (optional; offline when None)
        """
        self.supabase = supabase_client
        self.use_supabase = supabase_client is not None
        self.current_user: Optional[AuthUser] = None
        self.loading = False
        self._preferences: Dict[str, Any] = {}
        self._listeners: List[AuthListener] = []

    def add_listener(self, listener: AuthListener):
        self._listeners.append(listener)

    def _notify(self):
        for listener in self._listeners:
            listener(self.current_user, self.loading)

    def _set_loading(self, loading: bool):
        self.loading = loading
        self._notify()

    async def sign_in(self, email: str, password: str) -> Optional[AuthUser]:
        """
        Sign in with email and password and load the profile.

        Returns:
            The AuthUser, or None if sign-in failed
        """
        if not self.use_supabase:
            logger.warning("⚠️ [Auth] Supabase not configured, cannot sign in")
            return None

        self._set_loading(True)
        try:
            response = self.supabase.auth.sign_in_with_password({"email": email, "password": password})
            if not response or not response.user:
                logger.warning("⚠️ [Auth] Sign-in returned no user")
                self.current_user = None
                return None
            self.current_user = await self._load_profile(response.user)
            logger.info(f"✅ [Auth] Signed in {self.current_user.id[:20]} as {self.current_user.role.value}")
            return self.current_user
        except Exception as e:
            logger.error(f"❌ [Auth] Sign-in failed: {e}")
            self.current_user = None
            return None
        finally:
            self._set_loading(False)

    async def restore_session(self) -> Optional[AuthUser]:
        """Load the user of an existing Supabase session, if any."""
        if not self.use_supabase:
            return None

        self._set_loading(True)
        try:
            response = self.supabase.auth.get_user()
            if not response or not response.user:
                self.current_user = None
                return None
            self.current_user = await self._load_profile(response.user)
            return self.current_user
        except Exception as e:
            logger.warning(f"⚠️ [Auth] No session to restore: {e}")
            self.current_user = None
            return None
        finally:
            self._set_loading(False)

    async def sign_out(self):
        if self.use_supabase:
            try:
                self.supabase.auth.sign_out()
            except Exception as e:
                logger.warning(f"⚠️ [Auth] Sign-out error: {e}")
        self.current_user = None
        self._preferences = {}
        self._notify()

    async def update_preferences(self, grade: str, interests: List[str]) -> bool:
        """
        Save onboarding answers to the profile.

        Returns:
            True if the profile was updated
        """
        if self.current_user is None:
            return False

        merged = {**self._preferences, "grade": grade, "interests": list(interests)}
        if self.use_supabase:
            try:
                self.supabase.table('profiles') \
                    .update({
                        'preferences': merged,
                        'updated_at': datetime.now().isoformat()
                    }) \
                    .eq('id', self.current_user.id) \
                    .execute()
            except Exception as e:
                logger.error(f"❌ [Auth] Error saving preferences: {e}")
                return False

        self._preferences = merged
        self.current_user.grade = grade
        self.current_user.interests = list(interests)
        logger.info(f"✅ [Auth] Saved preferences for {self.current_user.id[:20]}")
        self._notify()
        return True

    def get_access_token(self) -> Optional[str]:
        """Bearer token of the current session, or None when signed out or expired."""
        if not self.use_supabase:
            return None
        try:
            session = self.supabase.auth.get_session()
            return session.access_token if session else None
        except Exception as e:
            logger.warning(f"⚠️ [Auth] Could not read session token: {e}")
            return None

    async def _load_profile(self, supabase_user) -> AuthUser:
        email = getattr(supabase_user, "email", None)
        try:
            result = self.supabase.table('profiles') \
                .select('id, name, user_type, preferences') \
                .eq('id', supabase_user.id) \
                .execute()
            if result.data:
                profile = result.data[0]
                prefs = profile.get("preferences")
                self._preferences = prefs if isinstance(prefs, dict) else {}
                return profile_to_user(profile, email)
        except Exception as e:
            logger.error(f"❌ [Auth] Error loading profile: {e}")

        # No profile row yet: a fresh student who still needs onboarding
        metadata = getattr(supabase_user, "user_metadata", None) or {}
        self._preferences = {}
        return AuthUser(
            id=supabase_user.id,
            email=email,
            name=metadata.get("full_name") or (email.split("@")[0] if email else None),
        )
