"""
Course publisher collaborator.

Writes a teacher's finished course design to the `courses` table. Called
by the Navigation Controller at the end of the teacher sub-flow.
"""

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)


class CoursePublisher:
    """Persists published courses; keeps a local list when Supabase is absent."""

    def __init__(self, supabase_client=None):
        self.supabase = supabase_client
        self.use_supabase = supabase_client is not None
        self.published: List[Dict[str, Any]] = []

    async def publish(self, teacher_id: str, design: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        """
        Publish a course design.

        Returns:
            The stored course row, or None if the write failed
        """
        course = {
            **design,
            'teacher_id': teacher_id,
            'status': 'published',
            'published_at': datetime.now().isoformat(),
        }

        if self.use_supabase:
            try:
                result = self.supabase.table('courses').insert(course).execute()
                if result.data:
                    course = result.data[0]
            except Exception as e:
                logger.error(f"❌ [CoursePublisher] Error publishing course: {e}")
                return None

        self.published.insert(0, course)
        logger.info(f"✅ [CoursePublisher] Published course '{course.get('title', 'untitled')}'")
        return course
