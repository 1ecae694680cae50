"""GitLab issue and chat room bridge"""
