"""Code Duel evaluation core: daily LeetCode goal checks, streaks and penalties."""
