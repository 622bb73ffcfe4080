"""
Similarity measures driving the registration.

Image metrics compare one rendered view with its radiograph; vertex metrics check that
every mesh vertex is covered by a consistent number of views.
"""
