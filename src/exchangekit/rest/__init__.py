"""REST dispatch pipeline: rate gate, envelope checks, dispatcher."""
