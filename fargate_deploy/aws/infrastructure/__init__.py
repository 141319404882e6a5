"""Find-or-create managers for each AWS resource a deployment needs."""
