"""Wave scheduling, trigger conditions, circuit breaking and decision policies."""
